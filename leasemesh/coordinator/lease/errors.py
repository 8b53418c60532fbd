class LeaseError(Exception):
    """Base class for job lease coordination errors."""


class ClaimRace(LeaseError):
    """Another worker won the conditional update on this candidate."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Lost claim race on job '{job_id}'")
        self.job_id = job_id


class StoreUnavailable(LeaseError):
    """Transient failure talking to the job record store."""

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"Job store unavailable during {operation}: {detail}")
        self.operation = operation
        self.detail = detail


class LeaseLost(LeaseError):
    """The lease on a job was taken over or cleared while it was executing."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        super().__init__(f"Worker '{worker_id}' no longer holds the lease on '{job_id}'")
        self.job_id = job_id
        self.worker_id = worker_id


class ExecutionFailure(LeaseError):
    """The execution engine reported that a job failed."""

    def __init__(self, job_id: str, error: str, permanent: bool = False) -> None:
        super().__init__(error)
        self.job_id = job_id
        self.error = error
        self.permanent = permanent


class ConfigError(LeaseError):
    """Required configuration is missing or invalid."""
