from enum import Enum


class SchoolSource(str, Enum):
    MANAGEBAC = "mb"
    NEXQUARE = "nex"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CellOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


ACTIVE_RUN_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)
UNFINISHED_ATTEMPT_STATUSES = (AttemptStatus.PENDING.value, AttemptStatus.RUNNING.value)

CANCELLED_SUMMARY = "Cancelled by user"
CANCELLED_OUT_OF_PROCESS_SUMMARY = "Cancelled (run was not in this process)"
CANCELLED_ATTEMPT_MESSAGE = "Cancelled"

SCHEDULER_PRINCIPAL = "scheduler"


def source_label(source: str) -> str:
    """Human-readable connector name for a source tag."""
    return {
        SchoolSource.MANAGEBAC.value: "ManageBac",
        SchoolSource.NEXQUARE.value: "Nexquare",
    }.get(source, source)
