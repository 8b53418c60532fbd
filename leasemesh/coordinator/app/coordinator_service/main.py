import asyncio
import logging
from contextlib import suppress

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from api.routers import health_router, jobs_router, lease_router
from api.tasks import expiry_sweeper
from coordinator_service.logging_config import configure_logging
from coordinator_service.settings import Settings
from db import get_repository, init_repository
from lease import RetryPolicy, StoreUnavailable, init_coordinator

load_dotenv()
settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger("coordinator")

app = FastAPI(title="leasemesh coordinator", version="0.1.0")
app.state.worker_secret = settings.leasemesh_shared_secret
_sweeper_task: asyncio.Task[None] | None = None

app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(lease_router)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(
    request: Request, exc: StoreUnavailable
) -> JSONResponse:
    logger.warning(
        "store_unavailable",
        extra={"path": request.url.path, "operation": exc.operation},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


@app.on_event("startup")
async def startup() -> None:
    global _sweeper_task
    repository = init_repository(settings.db_url)
    init_coordinator(
        repository,
        policy=RetryPolicy(
            base_ms=settings.backoff_base_ms,
            cap_ms=settings.backoff_cap_ms,
            jitter_ms=settings.backoff_jitter_ms,
        ),
        default_max_attempts=settings.default_max_attempts,
    )
    _sweeper_task = asyncio.create_task(
        expiry_sweeper(settings.sweep_interval_seconds)
    )
    logger.info(
        "repository_initialized",
        extra={
            "db_url": settings.db_url,
            "sweep_interval_seconds": settings.sweep_interval_seconds,
            "default_max_attempts": settings.default_max_attempts,
            "worker_secret_enabled": bool(settings.leasemesh_shared_secret),
        },
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    global _sweeper_task
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        with suppress(asyncio.CancelledError):
            await _sweeper_task
        _sweeper_task = None
    get_repository().close()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
