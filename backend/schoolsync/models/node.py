"""Organisation hierarchy: nodes and the schools registered against them."""

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from schoolsync.database import Base


class Node(Base):
    """A position in the hierarchy (head office, region, school)."""

    __tablename__ = "nodes"

    node_id = Column(String(50), primary_key=True)
    parent_node_id = Column(String(50), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Node(id='{self.node_id}', parent='{self.parent_node_id}')>"


class NodeSchool(Base):
    """Registration of an external school identifier under a node."""

    __tablename__ = "node_schools"

    id = Column(Integer, primary_key=True, index=True)
    node_id = Column(String(50), nullable=False)
    school_id = Column(String(255), nullable=False)
    school_source = Column(String(10), nullable=False)  # 'mb' | 'nex'

    __table_args__ = (
        UniqueConstraint('node_id', 'school_id', 'school_source', name='uq_node_school'),
        Index('idx_node_schools_source_school', 'school_source', 'school_id'),
    )

    def __repr__(self):
        return f"<NodeSchool(node='{self.node_id}', school='{self.school_id}', source='{self.school_source}')>"
