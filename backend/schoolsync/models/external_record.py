"""Raw records pulled from the external APIs, upserted per endpoint."""

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from schoolsync.database import Base, JSONType


class ExternalRecord(Base):
    """One upserted row from a ManageBac or Nexquare endpoint."""

    __tablename__ = "external_records"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(10), nullable=False)
    school_id = Column(String(255), nullable=False)
    endpoint = Column(String(100), nullable=False)
    external_id = Column(String(255), nullable=False)
    payload = Column(JSONType, nullable=False)
    synced_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('source', 'school_id', 'endpoint', 'external_id', name='uq_external_record'),
    )

    def __repr__(self):
        return f"<ExternalRecord(source='{self.source}', endpoint='{self.endpoint}', id='{self.external_id}')>"
