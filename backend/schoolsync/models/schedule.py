"""Sync schedule model for recurring runs."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from schoolsync.database import Base, JSONType


class SyncSchedule(Base):
    """Cron-driven sync definition for a node scope and academic year."""

    __tablename__ = "sync_schedules"

    id = Column(Integer, primary_key=True, index=True)
    node_id = Column(String(50), nullable=False)
    academic_year = Column(String(20), nullable=False)
    cron_expression = Column(String(100), nullable=False)
    endpoints_mb = Column(JSONType, nullable=True)  # None = all ManageBac endpoints
    endpoints_nex = Column(JSONType, nullable=True)  # None = all Nexquare endpoints
    include_descendants = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<SyncSchedule(id={self.id}, node='{self.node_id}', cron='{self.cron_expression}', active={self.is_active})>"
