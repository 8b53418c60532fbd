import asyncio
import logging
from dataclasses import dataclass, field

from worker_service.runtime import StopReason, WorkerRuntime

logger = logging.getLogger("worker")


@dataclass(slots=True)
class DrainReport:
    finished: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return bool(self.abandoned)


class DrainController:
    """Graceful shutdown: stop claiming, ask running jobs to stop, wait a bounded time.

    Jobs still running when the timeout passes are abandoned with their
    lease intact; the coordinator's expiry sweep reclaims them later.
    """

    def __init__(self, runtime: WorkerRuntime, drain_timeout_ms: int) -> None:
        self._runtime = runtime
        self._timeout = drain_timeout_ms / 1000

    async def drain(self) -> DrainReport:
        runtime = self._runtime
        runtime.stop_claiming()

        in_flight = runtime.active_jobs()
        logger.info(
            "worker_draining",
            extra={
                "worker_id": runtime.worker_id,
                "in_flight": sorted(in_flight),
                "drain_timeout_seconds": self._timeout,
            },
        )
        for active in in_flight.values():
            active.request_stop(StopReason.SHUTDOWN)

        tasks = {
            active.task: job_id
            for job_id, active in in_flight.items()
            if active.task is not None
        }
        report = DrainReport()
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self._timeout)
            report.finished = sorted(tasks[task] for task in done)
            report.abandoned = sorted(tasks[task] for task in pending)

        for job_id in report.abandoned:
            active = in_flight[job_id]
            # Stop renewing so the lease lapses on its own.
            if active.heartbeat is not None:
                active.heartbeat.cancel()

        await runtime.close()

        if report.timed_out:
            logger.warning(
                "worker_drain_timed_out",
                extra={"worker_id": runtime.worker_id, "abandoned": report.abandoned},
            )
        else:
            logger.info(
                "worker_drained",
                extra={"worker_id": runtime.worker_id, "finished": report.finished},
            )
        return report
