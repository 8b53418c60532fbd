from datetime import datetime, timedelta, timezone

import pytest

from db import JobRepository
from lease import LeaseCoordinator, RetryPolicy


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, milliseconds: int) -> datetime:
        self.current = self.current + timedelta(milliseconds=milliseconds)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repo(tmp_path) -> JobRepository:
    repository = JobRepository(f"sqlite:///{tmp_path / 'lease-test.db'}")
    yield repository
    repository.close()


@pytest.fixture()
def coordinator(repo: JobRepository, clock: FakeClock) -> LeaseCoordinator:
    return LeaseCoordinator(repo, policy=RetryPolicy(jitter_ms=0), clock=clock)
