import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from lease.errors import ClaimRace
from lease.retry import RetryPolicy
from lease.store import ClaimFilter, Clock, JobStore, utc_now
from models import FailureKind, Job, JobStatus

logger = logging.getLogger("leasemesh.lease")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LEASE_DURATION_MS = 5 * 60 * 1000
MAX_CLAIM_RACES = 5

_RELEASE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.PENDING}
)


@dataclass(slots=True, frozen=True)
class HeartbeatAck:
    extended: bool
    cancel_requested: bool = False
    lease_expires_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class ReleaseOutcome:
    job: Job
    retry_after_ms: int | None = None

    @property
    def dead_lettered(self) -> bool:
        return self.job.status == JobStatus.DEAD


@dataclass(slots=True)
class SweepReport:
    reclaimed: list[str] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)


class LeaseCoordinator:
    """Claim, heartbeat, release and expiry sweep over a conditional-update store.

    The store's atomic conditional updates are the only synchronization
    between workers. Every method here may raise ``StoreUnavailable``.
    """

    def __init__(
        self,
        store: JobStore,
        policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._default_max_attempts = default_max_attempts

    @property
    def store(self) -> JobStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    def submit(
        self,
        payload: dict[str, Any],
        *,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
        job_id: str | None = None,
    ) -> tuple[Job, bool]:
        """Create a pending job. Returns ``(job, created)``.

        A ``dedupe_key`` matching a job that has not reached a terminal state
        returns that job with ``created=False``.
        """

        if dedupe_key:
            existing = self._store.find_active_by_dedupe_key(dedupe_key)
            if existing is not None:
                logger.info(
                    "job_deduplicated",
                    extra={"job_id": existing.id, "dedupe_key": dedupe_key},
                )
                return existing, False

        now = self._clock()
        job = self._store.create_job(
            Job(
                id=job_id or f"job-{uuid.uuid4().hex[:12]}",
                status=JobStatus.PENDING,
                payload=payload,
                max_attempts=max_attempts or self._default_max_attempts,
                dedupe_key=dedupe_key,
                run_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("job_submitted", extra={"job_id": job.id})
        return job, True

    def get(self, job_id: str) -> Job | None:
        return self._store.get_job(job_id)

    def claim(self, worker_id: str, lease_duration_ms: int) -> Job | None:
        now = self._clock()
        lease_until = now + timedelta(milliseconds=lease_duration_ms)
        excluded: set[str] = set()

        for _ in range(MAX_CLAIM_RACES + 1):
            try:
                job = self._store.try_claim_one(
                    ClaimFilter(now=now, exclude_ids=frozenset(excluded)),
                    new_owner=worker_id,
                    lease_until=lease_until,
                )
            except ClaimRace as race:
                logger.debug(
                    "claim_race", extra={"job_id": race.job_id, "worker_id": worker_id}
                )
                excluded.add(race.job_id)
                continue

            if job is not None:
                logger.info(
                    "job_claimed",
                    extra={
                        "job_id": job.id,
                        "worker_id": worker_id,
                        "attempt_count": job.attempt_count,
                        "lease_expires_at": job.lease_expires_at,
                    },
                )
            return job

        logger.debug(
            "claim_races_exhausted",
            extra={"worker_id": worker_id, "excluded": sorted(excluded)},
        )
        return None

    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        lease_duration_ms: int,
        *,
        mark_running: bool = False,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> HeartbeatAck:
        now = self._clock()
        job = self._store.try_extend_lease(
            job_id,
            worker_id,
            now + timedelta(milliseconds=lease_duration_ms),
            now=now,
            status=JobStatus.RUNNING if mark_running else None,
            progress=progress,
            current_step=current_step,
            total_steps=total_steps,
        )
        if job is None:
            logger.info(
                "heartbeat_rejected", extra={"job_id": job_id, "worker_id": worker_id}
            )
            return HeartbeatAck(extended=False)

        return HeartbeatAck(
            extended=True,
            cancel_requested=job.cancel_requested,
            lease_expires_at=job.lease_expires_at,
        )

    def release(
        self,
        job_id: str,
        worker_id: str,
        final_status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        failure_kind: FailureKind = FailureKind.EXECUTION,
    ) -> ReleaseOutcome | None:
        """Record the outcome of an execution if ``worker_id`` still owns the job.

        Returns ``None`` without writing anything when ownership has moved on.
        ``PENDING`` hands the job back unchanged (used when draining).
        """

        if final_status not in _RELEASE_STATUSES:
            raise ValueError(f"Cannot release a job as {final_status.value}")

        job = self._store.get_job(job_id)
        if job is None or job.owner_worker_id != worker_id or not job.is_owned:
            logger.info(
                "release_skipped",
                extra={
                    "job_id": job_id,
                    "worker_id": worker_id,
                    "current_owner": job.owner_worker_id if job else None,
                },
            )
            return None

        now = self._clock()
        retry_after_ms: int | None = None
        fields: dict[str, Any] = {}
        new_status = final_status

        if final_status == JobStatus.COMPLETED:
            fields = {"result": result, "last_error": None, "completed_at": now}
        elif final_status == JobStatus.CANCELED:
            fields = {"last_error": error or "Job canceled", "completed_at": now}
        elif final_status == JobStatus.PENDING:
            fields = {"run_at": now, "last_error": error}
        else:
            attempt_count = job.attempt_count + 1
            decision = self._policy.decide(attempt_count, job.max_attempts, failure_kind)
            fields = {"attempt_count": attempt_count, "last_error": error or "Job failed"}
            if decision.dead_letter:
                new_status = JobStatus.DEAD
                fields["completed_at"] = now
            else:
                new_status = JobStatus.PENDING
                retry_after_ms = decision.retry_after_ms
                fields["run_at"] = now + timedelta(milliseconds=retry_after_ms or 0)

        if new_status == JobStatus.PENDING and job.cancel_requested:
            # A flagged job is never claimed again, so it has to end here.
            new_status = JobStatus.CANCELED
            retry_after_ms = None
            fields.pop("run_at", None)
            fields["completed_at"] = now
            fields["last_error"] = "Job canceled"

        updated = self._store.try_finalize(
            job_id,
            worker_id,
            new_status,
            fields,
            now=now,
            expected_attempt_count=job.attempt_count,
            require_uncanceled=new_status == JobStatus.PENDING,
        )
        if updated is None:
            logger.info("release_skipped", extra={"job_id": job_id, "worker_id": worker_id})
            return None

        if updated.status == JobStatus.DEAD:
            logger.warning(
                "job_dead_lettered",
                extra={
                    "job_id": job_id,
                    "attempt_count": updated.attempt_count,
                    "error": updated.last_error,
                },
            )
        else:
            logger.info(
                "job_released",
                extra={
                    "job_id": job_id,
                    "worker_id": worker_id,
                    "status": updated.status.value,
                    "retry_after_ms": retry_after_ms,
                },
            )
        return ReleaseOutcome(job=updated, retry_after_ms=retry_after_ms)

    def request_cancel(self, job_id: str) -> Job:
        """Flag a job for cancellation; a pending job is canceled on the spot.

        Raises ``KeyError`` for an unknown job. Terminal jobs are returned as is.
        """

        job = self._store.request_cancel(job_id, now=self._clock())
        logger.info(
            "cancel_requested", extra={"job_id": job_id, "status": job.status.value}
        )
        return job

    def sweep_expired(self) -> SweepReport:
        """Return abandoned jobs to the queue, or cancel them if that was asked for.

        Reclaiming is not a failed attempt: ``attempt_count`` is left as is.
        """

        now = self._clock()
        report = SweepReport()

        for job in self._store.find_expired(now):
            if job.cancel_requested:
                new_status = JobStatus.CANCELED
                fields: dict[str, Any] = {
                    "last_error": "Canceled after lease expiry",
                    "completed_at": now,
                }
            else:
                new_status = JobStatus.PENDING
                fields = {"last_error": "Lease expired", "run_at": now}

            reclaimed = self._store.try_reclaim(
                job.id, job.version, new_status, fields, now=now
            )
            if reclaimed is None:
                continue

            if new_status == JobStatus.CANCELED:
                report.canceled.append(job.id)
            else:
                report.reclaimed.append(job.id)
            logger.info(
                "lease_expired",
                extra={
                    "job_id": job.id,
                    "previous_owner": job.owner_worker_id,
                    "status": new_status.value,
                },
            )

        return report


_default_coordinator: LeaseCoordinator | None = None


def init_coordinator(
    store: JobStore,
    policy: RetryPolicy | None = None,
    clock: Clock = utc_now,
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> LeaseCoordinator:
    global _default_coordinator
    _default_coordinator = LeaseCoordinator(
        store=store,
        policy=policy,
        clock=clock,
        default_max_attempts=default_max_attempts,
    )
    return _default_coordinator


def get_coordinator() -> LeaseCoordinator:
    if _default_coordinator is None:
        raise RuntimeError("Lease coordinator is not initialized")
    return _default_coordinator
