import os
import socket
import uuid
from dataclasses import dataclass

from lease import ConfigError
from worker_service.runtime import RuntimeConfig


def default_worker_id() -> str:
    host = socket.gethostname() or "worker"
    return f"{host}-worker-{uuid.uuid4().hex[:8]}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc


@dataclass(slots=True)
class Settings:
    worker_id: str
    coordinator_url: str
    db_url: str
    poll_interval_ms: int
    lease_duration_ms: int
    heartbeat_interval_ms: int
    max_concurrent_jobs: int
    drain_timeout_ms: int
    health_host: str
    health_port: int
    log_level: str
    leasemesh_shared_secret: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            worker_id=os.getenv("WORKER_ID", "").strip() or default_worker_id(),
            coordinator_url=os.getenv("COORDINATOR_URL", "").strip(),
            db_url=os.getenv("WORKER_DB_URL", "").strip(),
            poll_interval_ms=_int_env("POLL_INTERVAL_MS", 5000),
            lease_duration_ms=_int_env("LEASE_DURATION_MS", 300_000),
            heartbeat_interval_ms=_int_env("HEARTBEAT_INTERVAL_MS", 60_000),
            max_concurrent_jobs=_int_env("MAX_CONCURRENT_JOBS", 1),
            drain_timeout_ms=_int_env("DRAIN_TIMEOUT_MS", 30_000),
            health_host=os.getenv("WORKER_HEALTH_HOST", "0.0.0.0"),
            health_port=_int_env("WORKER_HEALTH_PORT", 8081),
            log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
            leasemesh_shared_secret=os.getenv("LEASEMESH_SHARED_SECRET", "").strip(),
        )

    def validate(self) -> list[str]:
        """Raise ``ConfigError`` for unusable settings; return warnings otherwise."""

        for name in (
            "poll_interval_ms",
            "lease_duration_ms",
            "heartbeat_interval_ms",
            "max_concurrent_jobs",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name.upper()} must be positive")
        if self.drain_timeout_ms < 0:
            raise ConfigError("DRAIN_TIMEOUT_MS must not be negative")
        if self.heartbeat_interval_ms >= self.lease_duration_ms:
            raise ConfigError(
                "HEARTBEAT_INTERVAL_MS must be shorter than LEASE_DURATION_MS"
            )
        if not self.coordinator_url and not self.db_url:
            raise ConfigError("Set COORDINATOR_URL or WORKER_DB_URL")
        if self.health_port < 0 or self.health_port > 65535:
            raise ConfigError("WORKER_HEALTH_PORT must be between 0 and 65535")

        warnings: list[str] = []
        if self.heartbeat_interval_ms * 4 > self.lease_duration_ms:
            warnings.append(
                "HEARTBEAT_INTERVAL_MS leaves fewer than four renewals per lease"
            )
        return warnings

    def runtime_config(self) -> RuntimeConfig:
        return RuntimeConfig(
            worker_id=self.worker_id,
            poll_interval_ms=self.poll_interval_ms,
            lease_duration_ms=self.lease_duration_ms,
            heartbeat_interval_ms=self.heartbeat_interval_ms,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )
