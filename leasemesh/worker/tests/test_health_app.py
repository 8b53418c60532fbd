import httpx

from models import Job, JobEventKind
from worker_service.executor import ExecutionContext, ExecutionResult
from worker_service.health import create_health_app
from worker_service.runtime import RuntimeConfig, WorkerRuntime


class IdleClient:
    worker_id = "worker-h"

    async def claim(self) -> Job | None:
        return None

    async def heartbeat(self, job_id, **kwargs):
        raise AssertionError("no job was claimed")

    async def release(self, job_id, status, **kwargs):
        raise AssertionError("no job was claimed")

    async def aclose(self) -> None:
        return None


class NoopExecutor:
    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        return ExecutionResult.ok()


def _runtime() -> WorkerRuntime:
    return WorkerRuntime(
        RuntimeConfig(worker_id="worker-h", poll_interval_ms=10, max_concurrent_jobs=3),
        IdleClient(),
        NoopExecutor(),
    )


def _http(runtime: WorkerRuntime) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=create_health_app(runtime))
    return httpx.AsyncClient(transport=transport, base_url="http://worker.test")


async def test_health_follows_runtime_state() -> None:
    runtime = _runtime()

    async with _http(runtime) as client:
        starting = await client.get("/health")
        assert starting.status_code == 503
        assert starting.json()["status"] == "starting"

        await runtime.start()
        healthy = await client.get("/health")
        assert healthy.status_code == 200
        body = healthy.json()
        assert body["status"] == "healthy"
        assert body["worker_id"] == "worker-h"
        assert body["active_jobs"] == []
        assert body["max_concurrent_jobs"] == 3
        assert body["rss_mb"] > 0
        assert body["uptime_seconds"] >= 0

        runtime.stop_claiming()
        draining = await client.get("/health")
        assert draining.status_code == 503
        assert draining.json()["status"] == "draining"

        await runtime.close()
        stopped = await client.get("/health")
        assert stopped.status_code == 503
        assert stopped.json()["status"] == "stopped"


async def test_metrics_reflect_event_stream() -> None:
    runtime = _runtime()
    await runtime.bus.emit("job-1", JobEventKind.CLAIMED)
    await runtime.bus.emit("job-1", JobEventKind.COMPLETED, duration_ms=100.0)
    await runtime.bus.emit("job-2", JobEventKind.CLAIMED)
    await runtime.bus.emit("job-2", JobEventKind.FAILED, duration_ms=300.0)

    async with _http(runtime) as client:
        response = await client.get("/metrics")

    assert response.status_code == 200
    body = response.json()
    assert body["claimed"] == 2
    assert body["total"] == 2
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    assert body["active"] == 0
    assert body["average_duration_ms"] == 200.0
    assert body["success_rate"] == 0.5
    assert body["failure_rate"] == 0.5
    assert body["last_job_at"] is not None
