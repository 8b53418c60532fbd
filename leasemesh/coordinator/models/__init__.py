from models.enums import (
    OWNED_STATUSES,
    TERMINAL_STATUSES,
    FailureKind,
    JobEventKind,
    JobStatus,
)
from models.events import JobEvent
from models.job import Job

__all__ = [
    "OWNED_STATUSES",
    "TERMINAL_STATUSES",
    "FailureKind",
    "Job",
    "JobEvent",
    "JobEventKind",
    "JobStatus",
]
