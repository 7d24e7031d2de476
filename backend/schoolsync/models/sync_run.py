"""Sync run ledger: one row per run plus one row per school attempt."""

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from schoolsync.database import Base, JSONType


class SyncRun(Base):
    """Aggregate status of a sync run."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("sync_schedules.id", ondelete="SET NULL"), nullable=True)

    # Scope
    node_id = Column(String(1000), nullable=False)  # Joined node ids, 'all', or explicit config label
    academic_year = Column(String(20), nullable=False)

    # Execution details
    status = Column(String(20), nullable=False, default='pending')  # pending|running|completed|failed|cancelled
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    triggered_by = Column(String(255), nullable=False, default='scheduler')

    # Statistics
    total_schools = Column(Integer, default=0, nullable=False)
    schools_succeeded = Column(Integer, default=0, nullable=False)
    schools_failed = Column(Integer, default=0, nullable=False)

    # Error information
    error_summary = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    schools = relationship(
        "SyncRunSchool",
        back_populates="sync_run",
        cascade="all, delete-orphan",
        order_by="SyncRunSchool.id",
    )

    __table_args__ = (
        Index('idx_sync_runs_started_at', 'started_at'),
        Index('idx_sync_runs_status', 'status'),
    )

    def __repr__(self):
        return f"<SyncRun(id={self.id}, scope='{self.node_id}', status='{self.status}', total={self.total_schools})>"


class SyncRunSchool(Base):
    """One external system's attempt within a run."""

    __tablename__ = "sync_run_schools"

    id = Column(Integer, primary_key=True, index=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    school_id = Column(String(255), nullable=False)
    school_source = Column(String(10), nullable=False)  # 'mb' | 'nex'
    config_id = Column(Integer, nullable=False)
    school_name = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default='pending')  # pending|running|completed|failed|skipped
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Live progress
    current_endpoint = Column(String(100), nullable=True)
    endpoint_log = Column(JSONType, nullable=True)  # [{endpoint, started_at, completed_at, error?}, ...]

    sync_run = relationship("SyncRun", back_populates="schools")

    __table_args__ = (
        Index('idx_sync_run_schools_run_status', 'sync_run_id', 'status'),
    )

    def __repr__(self):
        return f"<SyncRunSchool(id={self.id}, run={self.sync_run_id}, school='{self.school_name}', status='{self.status}')>"
