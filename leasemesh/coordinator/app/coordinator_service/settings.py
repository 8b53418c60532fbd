import os
from dataclasses import dataclass


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    log_level: str
    db_url: str
    sweep_interval_seconds: float
    default_max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int
    backoff_jitter_ms: int
    leasemesh_shared_secret: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("COORDINATOR_HOST", "0.0.0.0"),
            port=int(os.getenv("COORDINATOR_PORT", "8000")),
            log_level=os.getenv("COORDINATOR_LOG_LEVEL", "INFO"),
            db_url=os.getenv("COORDINATOR_DB_URL", "sqlite:///./leasemesh.db"),
            sweep_interval_seconds=float(os.getenv("SWEEP_INTERVAL_SECONDS", "30")),
            default_max_attempts=int(os.getenv("DEFAULT_MAX_ATTEMPTS", "5")),
            backoff_base_ms=int(os.getenv("BACKOFF_BASE_MS", "5000")),
            backoff_cap_ms=int(os.getenv("BACKOFF_CAP_MS", "600000")),
            backoff_jitter_ms=int(os.getenv("BACKOFF_JITTER_MS", "5000")),
            leasemesh_shared_secret=os.getenv("LEASEMESH_SHARED_SECRET", "").strip(),
        )
