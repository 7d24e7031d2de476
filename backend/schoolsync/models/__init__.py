"""Database models."""

from schoolsync.models.node import Node, NodeSchool
from schoolsync.models.school_config import SchoolConfig
from schoolsync.models.schedule import SyncSchedule
from schoolsync.models.sync_run import SyncRun, SyncRunSchool
from schoolsync.models.external_record import ExternalRecord
from schoolsync.models.audit_log import AuditLog

__all__ = [
    "Node",
    "NodeSchool",
    "SchoolConfig",
    "SyncSchedule",
    "SyncRun",
    "SyncRunSchool",
    "ExternalRecord",
    "AuditLog",
]
