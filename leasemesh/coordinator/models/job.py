from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from models.enums import OWNED_STATUSES, TERMINAL_STATUSES, JobStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    status: JobStatus = JobStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    owner_worker_id: str | None = Field(default=None, max_length=128)
    lease_expires_at: datetime | None = None
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    progress: str | None = Field(default=None, max_length=2048)
    current_step: int | None = Field(default=None, ge=0)
    total_steps: int | None = Field(default=None, ge=0)
    cancel_requested: bool = False
    run_at: datetime | None = None
    dedupe_key: str | None = Field(default=None, max_length=256)
    result: dict[str, Any] | None = None
    last_error: str | None = Field(default=None, max_length=4096)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    @property
    def is_owned(self) -> bool:
        return self.status in OWNED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def lease_expired(self, now: datetime) -> bool:
        if not self.is_owned or self.lease_expires_at is None:
            return False
        return self.lease_expires_at < now
