from lease.coordinator import (
    DEFAULT_LEASE_DURATION_MS,
    DEFAULT_MAX_ATTEMPTS,
    HeartbeatAck,
    LeaseCoordinator,
    ReleaseOutcome,
    SweepReport,
    get_coordinator,
    init_coordinator,
)
from lease.errors import (
    ClaimRace,
    ConfigError,
    ExecutionFailure,
    LeaseError,
    LeaseLost,
    StoreUnavailable,
)
from lease.retry import RetryDecision, RetryPolicy, compute_backoff_ms, decide_retry
from lease.store import ClaimFilter, Clock, JobStore, utc_now

__all__ = [
    "DEFAULT_LEASE_DURATION_MS",
    "DEFAULT_MAX_ATTEMPTS",
    "ClaimFilter",
    "ClaimRace",
    "Clock",
    "ConfigError",
    "ExecutionFailure",
    "HeartbeatAck",
    "JobStore",
    "LeaseCoordinator",
    "LeaseError",
    "LeaseLost",
    "ReleaseOutcome",
    "RetryDecision",
    "RetryPolicy",
    "StoreUnavailable",
    "SweepReport",
    "compute_backoff_ms",
    "decide_retry",
    "get_coordinator",
    "init_coordinator",
    "utc_now",
]
