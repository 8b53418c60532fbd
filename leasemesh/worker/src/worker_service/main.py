import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Iterator

import uvicorn
from dotenv import load_dotenv

from db import JobRepository
from lease import ConfigError, LeaseCoordinator
from worker_service.clients import HttpLeaseClient, LeaseClient, LocalLeaseClient
from worker_service.drain import DrainController, DrainReport
from worker_service.executor import JobExecutor, SubprocessExecutor
from worker_service.health import create_health_app
from worker_service.logging_config import configure_logging
from worker_service.runtime import WorkerRuntime
from worker_service.settings import Settings

logger = logging.getLogger("worker")


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to the worker's drain path."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def build_client(settings: Settings) -> LeaseClient:
    if settings.coordinator_url:
        return HttpLeaseClient(
            settings.coordinator_url,
            settings.worker_id,
            settings.lease_duration_ms,
            shared_secret=settings.leasemesh_shared_secret,
        )
    repository = JobRepository(settings.db_url)
    return LocalLeaseClient(
        LeaseCoordinator(repository), settings.worker_id, settings.lease_duration_ms
    )


async def run_worker(
    settings: Settings,
    executor: JobExecutor | None = None,
    stop_event: asyncio.Event | None = None,
) -> DrainReport:
    client = build_client(settings)
    runtime = WorkerRuntime(
        settings.runtime_config(), client, executor or SubprocessExecutor()
    )
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    handled: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)
            handled.append(sig)

    health_server: HealthServer | None = None
    health_task: asyncio.Task[None] | None = None
    if settings.health_port > 0:
        health_server = HealthServer(
            uvicorn.Config(
                create_health_app(runtime),
                host=settings.health_host,
                port=settings.health_port,
                log_level="warning",
                lifespan="off",
            )
        )
        health_task = asyncio.create_task(health_server.serve())

    await runtime.start()
    logger.info(
        "worker_started",
        extra={
            "worker_id": settings.worker_id,
            "lease_client": "http" if settings.coordinator_url else "local",
            "health_port": settings.health_port,
        },
    )

    try:
        await stop_event.wait()
        logger.info(
            "worker_shutdown_requested", extra={"worker_id": settings.worker_id}
        )
    finally:
        report = await DrainController(runtime, settings.drain_timeout_ms).drain()
        if health_server is not None and health_task is not None:
            health_server.should_exit = True
            await health_task
        await client.aclose()
        for sig in handled:
            loop.remove_signal_handler(sig)
    return report


def main() -> None:
    load_dotenv()
    try:
        settings = Settings.from_env()
        warnings = settings.validate()
    except ConfigError as exc:
        configure_logging(os.getenv("WORKER_LOG_LEVEL", "INFO"))
        logger.critical("worker_config_invalid", extra={"error": str(exc)})
        raise SystemExit(1) from exc

    configure_logging(settings.log_level)
    for warning in warnings:
        logger.warning("worker_config_warning", extra={"warning": warning})

    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
