import asyncio
from collections.abc import Callable

import pytest

from db import JobRepository
from lease import LeaseCoordinator, RetryPolicy
from worker_service.clients import LocalLeaseClient
from worker_service.executor import JobExecutor
from worker_service.runtime import RuntimeConfig, WorkerRuntime


@pytest.fixture()
def repo(tmp_path) -> JobRepository:
    repository = JobRepository(f"sqlite:///{tmp_path / 'worker-test.db'}")
    yield repository
    repository.close()


@pytest.fixture()
def coordinator(repo: JobRepository) -> LeaseCoordinator:
    return LeaseCoordinator(repo, policy=RetryPolicy(jitter_ms=0))


@pytest.fixture()
async def make_runtime(coordinator: LeaseCoordinator):
    runtimes: list[WorkerRuntime] = []

    def factory(
        executor: JobExecutor, worker_id: str = "worker-a", **overrides
    ) -> WorkerRuntime:
        config = RuntimeConfig(
            worker_id=worker_id,
            poll_interval_ms=20,
            lease_duration_ms=5000,
            heartbeat_interval_ms=50,
            max_concurrent_jobs=1,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        client = LocalLeaseClient(coordinator, worker_id, config.lease_duration_ms)
        runtime = WorkerRuntime(config, client, executor)
        runtimes.append(runtime)
        return runtime

    yield factory

    for runtime in runtimes:
        tasks = [a.task for a in runtime.active_jobs().values() if a.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await runtime.close()


@pytest.fixture()
def wait_until() -> Callable:
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
