import threading
from datetime import timedelta

import pytest

from db import JobRepository
from lease import LeaseCoordinator, RetryPolicy
from models import FailureKind, JobStatus

LEASE_MS = 300_000


def _submit(coordinator: LeaseCoordinator, clock, count: int = 1, **kwargs) -> list[str]:
    ids = []
    for _ in range(count):
        job, _ = coordinator.submit({"command": "true"}, **kwargs)
        ids.append(job.id)
        clock.advance(1)
    return ids


def test_concurrent_claims_never_share_a_job(tmp_path) -> None:
    db_url = f"sqlite:///{tmp_path / 'race.db'}"
    repository = JobRepository(db_url)
    submitter = LeaseCoordinator(repository)
    job_ids = {submitter.submit({"n": n})[0].id for n in range(20)}

    claims: dict[str, list[str]] = {}
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def worker(worker_id: str) -> None:
        coordinator = LeaseCoordinator(repository)
        barrier.wait()
        while True:
            job = coordinator.claim(worker_id, LEASE_MS)
            if job is None:
                return
            with lock:
                claims.setdefault(job.id, []).append(worker_id)

    threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    # A worker can give up after losing several races in a row; mop up serially.
    leftover = LeaseCoordinator(repository)
    while (job := leftover.claim("w-final", LEASE_MS)) is not None:
        claims.setdefault(job.id, []).append("w-final")

    assert set(claims) == job_ids
    assert all(len(owners) == 1 for owners in claims.values())
    for job_id, owners in claims.items():
        assert repository.get_job(job_id).owner_worker_id == owners[0]
    repository.close()


def test_crashed_worker_job_is_reclaimed_only_after_expiry(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)

    first = coordinator.claim("worker-a", LEASE_MS)
    assert first is not None and first.id == job_id

    clock.advance(LEASE_MS - 1)
    assert coordinator.claim("worker-b", LEASE_MS) is None
    clock.advance(1)
    assert coordinator.claim("worker-b", LEASE_MS) is None

    clock.advance(1)
    second = coordinator.claim("worker-b", LEASE_MS)
    assert second is not None
    assert second.id == job_id
    assert second.owner_worker_id == "worker-b"
    assert second.attempt_count == 0


def test_heartbeat_extends_lease_and_marks_running(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)

    clock.advance(LEASE_MS - 1000)
    ack = coordinator.heartbeat(job_id, "worker-a", LEASE_MS, mark_running=True)

    assert ack.extended is True
    assert ack.cancel_requested is False
    job = coordinator.get(job_id)
    assert job.status == JobStatus.RUNNING
    assert job.lease_expires_at == ack.lease_expires_at
    assert ack.lease_expires_at == clock() + timedelta(milliseconds=LEASE_MS)

    clock.advance(LEASE_MS - 1000)
    assert coordinator.claim("worker-b", LEASE_MS) is None


def test_heartbeat_fails_after_takeover(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    clock.advance(LEASE_MS + 1)
    coordinator.claim("worker-b", LEASE_MS)

    ack = coordinator.heartbeat(job_id, "worker-a", LEASE_MS)

    assert ack.extended is False
    assert coordinator.get(job_id).owner_worker_id == "worker-b"


def test_release_by_previous_owner_is_a_no_op(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    clock.advance(LEASE_MS + 1)
    coordinator.claim("worker-b", LEASE_MS)

    outcome = coordinator.release(
        job_id, "worker-a", JobStatus.COMPLETED, result={"stale": True}
    )

    assert outcome is None
    job = coordinator.get(job_id)
    assert job.status == JobStatus.CLAIMED
    assert job.owner_worker_id == "worker-b"
    assert job.result is None


def test_completed_release_stores_result(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)

    outcome = coordinator.release(
        job_id, "worker-a", JobStatus.COMPLETED, result={"pages": 12}
    )

    assert outcome is not None
    assert outcome.job.status == JobStatus.COMPLETED
    assert outcome.job.result == {"pages": 12}
    assert outcome.job.completed_at == clock()
    assert coordinator.release(job_id, "worker-a", JobStatus.COMPLETED) is None


def test_job_is_dead_after_max_attempts(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock, max_attempts=3)
    delays = []

    for attempt in range(1, 4):
        job = coordinator.claim("worker-a", LEASE_MS)
        assert job is not None and job.id == job_id
        outcome = coordinator.release(
            job_id, "worker-a", JobStatus.FAILED, error=f"boom {attempt}"
        )
        assert outcome is not None
        assert outcome.job.attempt_count == attempt
        if attempt < 3:
            assert outcome.job.status == JobStatus.PENDING
            assert coordinator.claim("worker-a", LEASE_MS) is None
            delays.append(outcome.retry_after_ms)
            clock.advance(outcome.retry_after_ms)

    assert delays == [5_000, 10_000]
    assert outcome.dead_lettered is True
    job = coordinator.get(job_id)
    assert job.status == JobStatus.DEAD
    assert job.last_error == "boom 3"

    clock.advance(24 * 60 * 60 * 1000)
    assert coordinator.claim("worker-b", LEASE_MS) is None


def test_permanent_failure_skips_retries(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)

    outcome = coordinator.release(
        job_id,
        "worker-a",
        JobStatus.FAILED,
        error="bad payload",
        failure_kind=FailureKind.PERMANENT,
    )

    assert outcome is not None
    assert outcome.job.status == JobStatus.DEAD
    assert outcome.job.attempt_count == 1


def test_pending_release_requeues_without_counting_an_attempt(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)

    outcome = coordinator.release(job_id, "worker-a", JobStatus.PENDING)

    assert outcome is not None
    assert outcome.job.status == JobStatus.PENDING
    assert outcome.job.attempt_count == 0
    again = coordinator.claim("worker-b", LEASE_MS)
    assert again is not None and again.id == job_id


def test_release_rejects_non_final_status(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)

    with pytest.raises(ValueError):
        coordinator.release(job_id, "worker-a", JobStatus.RUNNING)


def test_cancel_pending_job_removes_it_from_the_queue(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)

    job = coordinator.request_cancel(job_id)

    assert job.status == JobStatus.CANCELED
    assert coordinator.claim("worker-a", LEASE_MS) is None


def test_cancel_running_job_reaches_worker_on_heartbeat(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    coordinator.heartbeat(job_id, "worker-a", LEASE_MS, mark_running=True)

    flagged = coordinator.request_cancel(job_id)
    assert flagged.status == JobStatus.RUNNING
    assert flagged.cancel_requested is True

    ack = coordinator.heartbeat(job_id, "worker-a", LEASE_MS)
    assert ack.extended is True
    assert ack.cancel_requested is True

    outcome = coordinator.release(job_id, "worker-a", JobStatus.CANCELED)
    assert outcome is not None
    assert outcome.job.status == JobStatus.CANCELED
    assert outcome.job.attempt_count == 0


def test_failed_release_after_cancel_request_ends_canceled(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    coordinator.request_cancel(job_id)

    outcome = coordinator.release(job_id, "worker-a", JobStatus.FAILED, error="boom")

    assert outcome is not None
    assert outcome.retry_after_ms is None
    assert outcome.job.status == JobStatus.CANCELED
    assert outcome.job.completed_at == clock()
    assert outcome.job.owner_worker_id is None
    clock.advance(86_400_000)
    assert coordinator.claim("worker-b", LEASE_MS) is None
    assert coordinator.sweep_expired().canceled == []


def test_requeue_after_cancel_request_ends_canceled(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    coordinator.request_cancel(job_id)

    outcome = coordinator.release(
        job_id, "worker-a", JobStatus.PENDING, error="Worker shutting down"
    )

    assert outcome is not None
    assert outcome.job.status == JobStatus.CANCELED
    assert outcome.job.attempt_count == 0
    assert coordinator.get(job_id).status == JobStatus.CANCELED


def test_cancel_unknown_job_raises_key_error(coordinator) -> None:
    with pytest.raises(KeyError):
        coordinator.request_cancel("missing")


def test_sweep_reclaims_expired_and_cancels_flagged(coordinator, clock) -> None:
    first, second, third = _submit(coordinator, clock, count=3)
    for worker in ("worker-a", "worker-b", "worker-c"):
        coordinator.claim(worker, LEASE_MS)
    coordinator.request_cancel(second)
    clock.advance(LEASE_MS - 100)
    coordinator.heartbeat(third, "worker-c", LEASE_MS)

    clock.advance(200)
    report = coordinator.sweep_expired()

    assert report.reclaimed == [first]
    assert report.canceled == [second]
    reclaimed = coordinator.get(first)
    assert reclaimed.status == JobStatus.PENDING
    assert reclaimed.attempt_count == 0
    assert reclaimed.owner_worker_id is None
    assert coordinator.get(second).status == JobStatus.CANCELED
    assert coordinator.get(third).owner_worker_id == "worker-c"


def test_expired_job_with_cancel_flag_is_never_reclaimed(coordinator, clock) -> None:
    (job_id,) = _submit(coordinator, clock)
    coordinator.claim("worker-a", LEASE_MS)
    coordinator.request_cancel(job_id)
    clock.advance(LEASE_MS + 1)

    assert coordinator.claim("worker-b", LEASE_MS) is None


def test_submit_deduplicates_active_jobs(coordinator, clock) -> None:
    first, created = coordinator.submit({"repo": "a"}, dedupe_key="repo-a")
    second, created_again = coordinator.submit({"repo": "a"}, dedupe_key="repo-a")

    assert created is True
    assert created_again is False
    assert second.id == first.id

    coordinator.claim("worker-a", LEASE_MS)
    coordinator.release(first.id, "worker-a", JobStatus.COMPLETED)
    third, created_third = coordinator.submit({"repo": "a"}, dedupe_key="repo-a")
    assert created_third is True
    assert third.id != first.id


def test_submit_uses_default_max_attempts(repo, clock) -> None:
    coordinator = LeaseCoordinator(
        repo, policy=RetryPolicy(jitter_ms=0), clock=clock, default_max_attempts=2
    )

    job, _ = coordinator.submit({})
    explicit, _ = coordinator.submit({}, max_attempts=7)

    assert job.max_attempts == 2
    assert explicit.max_attempts == 7
