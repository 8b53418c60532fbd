from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from models.enums import JobEventKind


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobEvent(BaseModel):
    """One entry on a worker's outbound event stream."""

    job_id: str
    kind: JobEventKind
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=_utc_now)
