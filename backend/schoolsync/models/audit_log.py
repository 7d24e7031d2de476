"""Audit trail of administrative sync actions."""

from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from schoolsync.database import Base, JSONType


class AuditLog(Base):
    """Who triggered, cancelled or rescheduled what, and from where."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    action = Column(String(100), nullable=False)  # 'sync_triggered', 'sync_cancelled', 'schedule_created', ...
    entity_type = Column(String(50), nullable=True)  # 'sync_run', 'sync_schedule'
    entity_id = Column(Integer, nullable=True)

    user = Column(String(255), nullable=True)
    details = Column(JSONType, nullable=True)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_logs_action', 'action'),
        Index('idx_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity='{self.entity_type}:{self.entity_id}')>"
