from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from models import FailureKind, Job, JobStatus


class JobCreateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    dedupe_key: str | None = Field(default=None, min_length=1, max_length=256)


class ClaimRequest(BaseModel):
    worker_id: str = Field(min_length=1, max_length=128)
    lease_duration_ms: int = Field(gt=0)


class ClaimResponse(BaseModel):
    job: Job | None = None


class HeartbeatRequest(BaseModel):
    worker_id: str = Field(min_length=1, max_length=128)
    lease_duration_ms: int = Field(gt=0)
    mark_running: bool = False
    progress: str | None = Field(default=None, max_length=2048)
    current_step: int | None = Field(default=None, ge=0)
    total_steps: int | None = Field(default=None, ge=0)


class HeartbeatResponse(BaseModel):
    extended: bool
    cancel_requested: bool = False
    lease_expires_at: datetime | None = None


class ReleaseRequest(BaseModel):
    worker_id: str = Field(min_length=1, max_length=128)
    status: JobStatus
    result: dict[str, Any] | None = None
    error: str | None = Field(default=None, max_length=4096)
    failure_kind: FailureKind = FailureKind.EXECUTION


class ReleaseResponse(BaseModel):
    released: bool
    job: Job | None = None
    retry_after_ms: int | None = None


class SweepResponse(BaseModel):
    reclaimed: list[str] = Field(default_factory=list)
    canceled: list[str] = Field(default_factory=list)
