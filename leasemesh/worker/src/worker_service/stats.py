import time
from dataclasses import dataclass, field

from models import JobEvent, JobEventKind

_FINISHED_KINDS = {
    JobEventKind.COMPLETED,
    JobEventKind.FAILED,
    JobEventKind.CANCELED,
    JobEventKind.LEASE_LOST,
    JobEventKind.REQUEUED,
}


@dataclass(slots=True)
class WorkerStats:
    """Counters owned by one WorkerRuntime, fed from its event stream."""

    claimed: int = 0
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    lease_lost: int = 0
    requeued: int = 0
    total_duration_ms: float = 0.0
    last_job_at: float | None = None
    started_at: float = field(default_factory=time.time)

    def apply(self, event: JobEvent) -> None:
        if event.kind == JobEventKind.CLAIMED:
            self.claimed += 1
            self.last_job_at = time.time()
            return
        if event.kind not in _FINISHED_KINDS:
            return

        self.total += 1
        self.total_duration_ms += float(event.payload.get("duration_ms", 0.0))
        if event.kind == JobEventKind.COMPLETED:
            self.succeeded += 1
        elif event.kind == JobEventKind.FAILED:
            self.failed += 1
        elif event.kind == JobEventKind.CANCELED:
            self.canceled += 1
        elif event.kind == JobEventKind.LEASE_LOST:
            self.lease_lost += 1
        else:
            self.requeued += 1

    @property
    def average_duration_ms(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.total_duration_ms / self.total, 3)

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 1.0

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0
