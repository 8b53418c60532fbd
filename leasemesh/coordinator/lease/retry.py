import random
from dataclasses import dataclass, field

from models import FailureKind

DEFAULT_BACKOFF_BASE_MS = 5_000
DEFAULT_BACKOFF_CAP_MS = 10 * 60 * 1000
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_JITTER_MS = 5_000


@dataclass(slots=True, frozen=True)
class RetryDecision:
    retry_after_ms: int | None = None
    dead_letter: bool = False


def compute_backoff_ms(
    attempt_count: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
    factor: float = DEFAULT_BACKOFF_FACTOR,
    jitter_ms: int = DEFAULT_BACKOFF_JITTER_MS,
    jitter_fraction: float = 0.0,
) -> int:
    """Exponential delay for the given (1-based) failed attempt.

    The exponential part is capped before jitter is added, so the delay never
    exceeds ``cap_ms + jitter_ms``.
    """

    exponent = max(attempt_count - 1, 0)
    delay = min(base_ms * (factor**exponent), float(cap_ms))
    jitter = max(0.0, min(jitter_fraction, 1.0)) * jitter_ms
    return int(delay + jitter)


def decide_retry(
    attempt_count: int,
    max_attempts: int,
    failure_kind: FailureKind,
    *,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
    factor: float = DEFAULT_BACKOFF_FACTOR,
    jitter_ms: int = DEFAULT_BACKOFF_JITTER_MS,
    jitter_fraction: float = 0.0,
) -> RetryDecision:
    """Map a failed attempt to a retry delay or a dead-letter decision.

    ``attempt_count`` is the count after the failure being decided has been
    recorded.
    """

    if failure_kind == FailureKind.PERMANENT or attempt_count >= max_attempts:
        return RetryDecision(dead_letter=True)

    return RetryDecision(
        retry_after_ms=compute_backoff_ms(
            attempt_count,
            base_ms=base_ms,
            cap_ms=cap_ms,
            factor=factor,
            jitter_ms=jitter_ms,
            jitter_fraction=jitter_fraction,
        )
    )


@dataclass(slots=True)
class RetryPolicy:
    base_ms: int = DEFAULT_BACKOFF_BASE_MS
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS
    factor: float = DEFAULT_BACKOFF_FACTOR
    jitter_ms: int = DEFAULT_BACKOFF_JITTER_MS
    rng: random.Random = field(default_factory=random.Random)

    def decide(
        self, attempt_count: int, max_attempts: int, failure_kind: FailureKind
    ) -> RetryDecision:
        return decide_retry(
            attempt_count,
            max_attempts,
            failure_kind,
            base_ms=self.base_ms,
            cap_ms=self.cap_ms,
            factor=self.factor,
            jitter_ms=self.jitter_ms,
            jitter_fraction=self.rng.random(),
        )
