"""School config model: one external ManageBac or Nexquare account."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.sql import func
from schoolsync.database import Base, JSONType


class SchoolConfig(Base):
    """Credentials and identity of one external school system."""

    __tablename__ = "school_configs"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(10), nullable=False, index=True)  # 'mb' or 'nex'
    school_name = Column(String(255), nullable=False)
    school_id = Column(String(255), nullable=True)  # External school identifier
    base_url = Column(String(255), nullable=True)  # ManageBac base URL / Nexquare domain URL
    credentials = Column(Text, nullable=False)  # Encrypted JSON
    settings = Column(JSONType, nullable=True)
    country = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<SchoolConfig(id={self.id}, source='{self.source}', school='{self.school_name}')>"
