import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lease import HeartbeatAck, StoreUnavailable
from models import FailureKind, Job, JobEventKind, JobStatus
from worker_service.clients import LeaseClient
from worker_service.events import JobEventBus
from worker_service.executor import (
    ExecutionContext,
    ExecutionResult,
    JobExecutor,
    JobStopped,
)
from worker_service.stats import WorkerStats

logger = logging.getLogger("worker")

MAX_ERROR_LENGTH = 4000
MAX_PROGRESS_LENGTH = 2000
RELEASE_ATTEMPTS = 3


class StopReason(str, Enum):
    CANCEL_REQUESTED = "cancel_requested"
    LEASE_LOST = "lease_lost"
    SHUTDOWN = "shutdown"


class RuntimeState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(slots=True)
class RuntimeConfig:
    worker_id: str
    poll_interval_ms: int = 5000
    lease_duration_ms: int = 300_000
    heartbeat_interval_ms: int = 60_000
    max_concurrent_jobs: int = 1


@dataclass(slots=True)
class ActiveJob:
    job: Job
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    stop_reason: StopReason | None = None
    task: asyncio.Task[None] | None = None
    execution: asyncio.Task[ExecutionResult] | None = None
    heartbeat: asyncio.Task[None] | None = None

    def request_stop(self, reason: StopReason) -> None:
        # A lost lease wins over any earlier reason: nothing may be released.
        if self.stop_reason is None or reason == StopReason.LEASE_LOST:
            self.stop_reason = reason
        self.stop_event.set()

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 3)


@dataclass(slots=True)
class _Outcome:
    kind: JobEventKind
    status: JobStatus | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    failure_kind: FailureKind = FailureKind.EXECUTION


def _failure_kind(permanent: bool) -> FailureKind:
    return FailureKind.PERMANENT if permanent else FailureKind.EXECUTION


def _log_client_error(event: str, exc: Exception, **extra: Any) -> None:
    """Coordinator outages are expected; anything else also gets a traceback."""

    extra["error"] = str(exc)
    if isinstance(exc, StoreUnavailable):
        logger.warning(event, extra=extra)
    else:
        logger.exception(event, extra=extra)


class WorkerRuntime:
    """Claims jobs, keeps their leases alive, runs them and releases them.

    At most ``max_concurrent_jobs`` executions run at once. The poll loop
    sleeps on a single wakeup event that is set whenever a slot frees up.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        client: LeaseClient,
        executor: JobExecutor,
        bus: JobEventBus | None = None,
        stats: WorkerStats | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.executor = executor
        self.bus = bus or JobEventBus()
        self.stats = stats or WorkerStats()
        self.bus.add_listener(self.stats.apply)

        self._active: dict[str, ActiveJob] = {}
        self._wakeup = asyncio.Event()
        self._accepting = False
        self._state = RuntimeState.STARTING
        self._poll_task: asyncio.Task[None] | None = None
        self._forward_task: asyncio.Task[None] | None = None
        self._progress_queue: asyncio.Queue[Any] | None = None

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._accepting

    def active_jobs(self) -> dict[str, ActiveJob]:
        return dict(self._active)

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        self._accepting = True
        self._state = RuntimeState.RUNNING
        self._progress_queue = await self.bus.subscribe()
        self._forward_task = asyncio.create_task(
            self._forward_progress(self._progress_queue), name="progress-forwarder"
        )
        self._poll_task = asyncio.create_task(self._poll_loop(), name="poll-loop")
        logger.info(
            "worker_runtime_started",
            extra={
                "worker_id": self.worker_id,
                "max_concurrent_jobs": self.config.max_concurrent_jobs,
                "lease_duration_ms": self.config.lease_duration_ms,
                "heartbeat_interval_ms": self.config.heartbeat_interval_ms,
            },
        )

    def stop_claiming(self) -> None:
        if self._accepting:
            logger.info("worker_stop_claiming", extra={"worker_id": self.worker_id})
        self._accepting = False
        if self._state == RuntimeState.RUNNING:
            self._state = RuntimeState.DRAINING
        self._wakeup.set()

    async def close(self) -> None:
        """Stop the poll loop and progress forwarder. Running jobs are left alone."""

        self.stop_claiming()
        for task in (self._poll_task, self._forward_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._progress_queue is not None:
            await self.bus.unsubscribe(self._progress_queue)
            self._progress_queue = None
        self._poll_task = None
        self._forward_task = None
        self._state = RuntimeState.STOPPED

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def _poll_loop(self) -> None:
        poll_interval = self.config.poll_interval_ms / 1000
        consecutive_errors = 0

        while self._accepting:
            if len(self._active) >= self.config.max_concurrent_jobs:
                await self._wait_for_wakeup(None)
                continue

            try:
                job = await self.client.claim()
            except Exception as exc:
                consecutive_errors += 1
                delay = poll_interval * (2 if consecutive_errors > 1 else 1)
                _log_client_error(
                    "claim_failed",
                    exc,
                    worker_id=self.worker_id,
                    consecutive_errors=consecutive_errors,
                    retry_in_seconds=delay,
                )
                await self._wait_for_wakeup(delay)
                continue

            consecutive_errors = 0
            if job is None:
                await self._wait_for_wakeup(poll_interval)
                continue

            if not self._accepting:
                await self._hand_back(job)
                break

            await self._start_job(job)

    async def _hand_back(self, job: Job) -> None:
        try:
            await self.client.release(
                job.id, JobStatus.PENDING, error="Worker shutting down"
            )
        except Exception as exc:
            _log_client_error("hand_back_failed", exc, job_id=job.id)

    async def _start_job(self, job: Job) -> None:
        active = ActiveJob(job=job)
        self._active[job.id] = active
        active.task = asyncio.create_task(self._run_job(active), name=f"job-{job.id}")
        await self.bus.emit(
            job.id, JobEventKind.CLAIMED, attempt_count=job.attempt_count
        )

    async def _run_job(self, active: ActiveJob) -> None:
        job = active.job
        context = ExecutionContext(
            job=job,
            stop_event=active.stop_event,
            progress_callback=lambda message, step, total: self._publish_progress(
                job.id, message, step, total
            ),
        )
        active.heartbeat = asyncio.create_task(self._heartbeat_loop(active))
        active.execution = asyncio.create_task(self.executor.execute(context))
        logger.info("job_started", extra={"job_id": job.id, "worker_id": self.worker_id})

        try:
            try:
                outcome = await self._await_execution(active)
            finally:
                active.heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await active.heartbeat
            await self._finish(active, outcome)
        finally:
            self._active.pop(job.id, None)
            self._wakeup.set()

    async def _await_execution(self, active: ActiveJob) -> _Outcome:
        assert active.execution is not None
        try:
            result = await active.execution
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                active.execution.cancel()
                raise
            if active.stop_reason == StopReason.LEASE_LOST:
                return _Outcome(JobEventKind.LEASE_LOST)
            return _Outcome(
                JobEventKind.FAILED, JobStatus.FAILED, error="Execution was cancelled"
            )
        except JobStopped:
            return self._stopped_outcome(active)
        except Exception as exc:
            if active.stop_reason == StopReason.LEASE_LOST:
                return _Outcome(JobEventKind.LEASE_LOST)
            permanent = bool(getattr(exc, "permanent", False))
            logger.exception("job_execution_error", extra={"job_id": active.job.id})
            return _Outcome(
                JobEventKind.FAILED,
                JobStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
                failure_kind=_failure_kind(permanent),
            )

        if active.stop_reason == StopReason.LEASE_LOST:
            return _Outcome(JobEventKind.LEASE_LOST)
        if result.success:
            return _Outcome(
                JobEventKind.COMPLETED, JobStatus.COMPLETED, result=result.data
            )
        return _Outcome(
            JobEventKind.FAILED,
            JobStatus.FAILED,
            error=result.error or "Job failed",
            failure_kind=_failure_kind(result.permanent),
        )

    def _stopped_outcome(self, active: ActiveJob) -> _Outcome:
        if active.stop_reason == StopReason.LEASE_LOST:
            return _Outcome(JobEventKind.LEASE_LOST)
        if active.stop_reason == StopReason.SHUTDOWN:
            return _Outcome(
                JobEventKind.REQUEUED, JobStatus.PENDING, error="Worker shutting down"
            )
        return _Outcome(
            JobEventKind.CANCELED, JobStatus.CANCELED, error="Job canceled"
        )

    async def _finish(self, active: ActiveJob, outcome: _Outcome) -> None:
        job = active.job
        payload: dict[str, Any] = {"duration_ms": active.elapsed_ms}
        if outcome.error:
            payload["error"] = outcome.error

        if outcome.status is None:
            logger.warning(
                "job_abandoned_lease_lost",
                extra={"job_id": job.id, "worker_id": self.worker_id, **payload},
            )
            await self.bus.emit(job.id, outcome.kind, **payload)
            return

        released = await self._release(job, outcome)
        payload["released"] = released is not None
        if released is not None:
            payload["status"] = released.status.value

        if outcome.kind == JobEventKind.FAILED:
            logger.error(
                "job_failed",
                extra={
                    "job_id": job.id,
                    "worker_id": self.worker_id,
                    "failure_kind": outcome.failure_kind.value,
                    **payload,
                },
            )
        else:
            logger.info(
                "job_finished",
                extra={
                    "job_id": job.id,
                    "worker_id": self.worker_id,
                    "outcome": outcome.kind.value,
                    **payload,
                },
            )
        await self.bus.emit(job.id, outcome.kind, **payload)

    async def _release(self, job: Job, outcome: _Outcome) -> Job | None:
        assert outcome.status is not None
        error = outcome.error[:MAX_ERROR_LENGTH] if outcome.error else None
        delay = self.config.poll_interval_ms / 1000

        for attempt in range(1, RELEASE_ATTEMPTS + 1):
            try:
                return await self.client.release(
                    job.id,
                    outcome.status,
                    result=outcome.result,
                    error=error,
                    failure_kind=outcome.failure_kind,
                )
            except Exception as exc:
                _log_client_error("release_failed", exc, job_id=job.id, attempt=attempt)
                if attempt < RELEASE_ATTEMPTS:
                    await asyncio.sleep(delay * attempt)

        # The lease will expire and the sweep returns the job to the queue.
        return None

    async def _heartbeat_loop(self, active: ActiveJob) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        mark_running = True

        while True:
            try:
                ack = await self.client.heartbeat(
                    active.job.id, mark_running=mark_running
                )
            except Exception as exc:
                _log_client_error("heartbeat_failed", exc, job_id=active.job.id)
            else:
                mark_running = False
                if self._apply_ack(active, ack):
                    return
            await asyncio.sleep(interval)

    def _apply_ack(self, active: ActiveJob, ack: HeartbeatAck) -> bool:
        """Act on a heartbeat answer. Returns True once the lease is gone."""

        if not ack.extended:
            if active.stop_reason != StopReason.LEASE_LOST:
                logger.warning(
                    "lease_lost",
                    extra={"job_id": active.job.id, "worker_id": self.worker_id},
                )
            active.request_stop(StopReason.LEASE_LOST)
            if active.execution is not None and not active.execution.done():
                active.execution.cancel()
            return True

        if ack.cancel_requested and active.stop_reason is None:
            logger.info("cancel_observed", extra={"job_id": active.job.id})
            active.request_stop(StopReason.CANCEL_REQUESTED)
        return False

    async def _publish_progress(
        self,
        job_id: str,
        message: str,
        current_step: int | None,
        total_steps: int | None,
    ) -> None:
        await self.bus.emit(
            job_id,
            JobEventKind.PROGRESS,
            message=message[:MAX_PROGRESS_LENGTH],
            current_step=current_step,
            total_steps=total_steps,
        )

    async def _forward_progress(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            if event.kind != JobEventKind.PROGRESS:
                continue
            active = self._active.get(event.job_id)
            if active is None or active.stop_reason == StopReason.LEASE_LOST:
                continue
            try:
                ack = await self.client.heartbeat(
                    event.job_id,
                    progress=event.payload.get("message"),
                    current_step=event.payload.get("current_step"),
                    total_steps=event.payload.get("total_steps"),
                )
            except Exception as exc:
                _log_client_error("progress_forward_failed", exc, job_id=event.job_id)
                continue
            self._apply_ack(active, ack)
