import time

import psutil
from fastapi import FastAPI, Response, status
from pydantic import BaseModel

from worker_service.runtime import RuntimeState, WorkerRuntime


class HealthResponse(BaseModel):
    status: str
    worker_id: str
    state: RuntimeState
    uptime_seconds: float
    active_jobs: list[str]
    max_concurrent_jobs: int
    rss_mb: float
    ram_percent: float


class MetricsResponse(BaseModel):
    worker_id: str
    claimed: int
    total: int
    succeeded: int
    failed: int
    canceled: int
    lease_lost: int
    requeued: int
    active: int
    average_duration_ms: float
    success_rate: float
    failure_rate: float
    last_job_at: float | None = None


def collect_process_metrics() -> dict[str, float]:
    memory = psutil.virtual_memory()
    rss = psutil.Process().memory_info().rss
    return {
        "rss_mb": round(rss / (1024**2), 3),
        "ram_percent": float(memory.percent),
    }


def create_health_app(runtime: WorkerRuntime) -> FastAPI:
    """Read-only liveness and counters for one worker runtime."""

    app = FastAPI(title="leasemesh worker", version="0.1.0")

    @app.get("/health", response_model=HealthResponse)
    def health(response: Response) -> HealthResponse:
        accepting = runtime.accepting
        if not accepting:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

        return HealthResponse(
            status="healthy" if accepting else runtime.state.value,
            worker_id=runtime.worker_id,
            state=runtime.state,
            uptime_seconds=round(time.time() - runtime.stats.started_at, 3),
            active_jobs=sorted(runtime.active_jobs()),
            max_concurrent_jobs=runtime.config.max_concurrent_jobs,
            **collect_process_metrics(),
        )

    @app.get("/metrics", response_model=MetricsResponse)
    def metrics() -> MetricsResponse:
        stats = runtime.stats
        return MetricsResponse(
            worker_id=runtime.worker_id,
            claimed=stats.claimed,
            total=stats.total,
            succeeded=stats.succeeded,
            failed=stats.failed,
            canceled=stats.canceled,
            lease_lost=stats.lease_lost,
            requeued=stats.requeued,
            active=len(runtime.active_jobs()),
            average_duration_ms=stats.average_duration_ms,
            success_rate=round(stats.success_rate, 4),
            failure_rate=round(stats.failure_rate, 4),
            last_job_at=stats.last_job_at,
        )

    return app
