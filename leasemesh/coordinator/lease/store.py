from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from models import Job, JobStatus

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ClaimFilter:
    """Eligibility for a claim: pending and due, or owned with an expired lease."""

    now: datetime
    exclude_ids: frozenset[str] = field(default_factory=frozenset)


class JobStore(Protocol):
    """Conditional-update primitives the lease coordinator is built on.

    Every ``try_*`` method is a single atomic conditional update. A ``None``
    return means the condition did not hold and nothing was written.
    ``try_claim_one`` raises ``ClaimRace`` when it found a candidate but lost
    the update to a concurrent writer. Transient I/O failures surface as
    ``StoreUnavailable``.
    """

    def create_job(self, job: Job) -> Job: ...

    def get_job(self, job_id: str) -> Job | None: ...

    def list_jobs(
        self, status: JobStatus | None = None, owner_worker_id: str | None = None
    ) -> list[Job]: ...

    def find_active_by_dedupe_key(self, dedupe_key: str) -> Job | None: ...

    def try_claim_one(
        self, candidate_filter: ClaimFilter, new_owner: str, lease_until: datetime
    ) -> Job | None: ...

    def try_extend_lease(
        self,
        job_id: str,
        owner_id: str,
        lease_until: datetime,
        *,
        now: datetime,
        status: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> Job | None: ...

    def try_finalize(
        self,
        job_id: str,
        owner_id: str,
        new_status: JobStatus,
        fields: dict[str, Any],
        *,
        now: datetime,
        expected_attempt_count: int | None = None,
        require_uncanceled: bool = False,
    ) -> Job | None: ...

    def request_cancel(self, job_id: str, *, now: datetime) -> Job: ...

    def find_expired(self, now: datetime) -> list[Job]: ...

    def try_reclaim(
        self,
        job_id: str,
        expected_version: int,
        new_status: JobStatus,
        fields: dict[str, Any],
        *,
        now: datetime,
    ) -> Job | None: ...
