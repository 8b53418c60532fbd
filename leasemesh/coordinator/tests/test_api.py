import importlib

import pytest
from fastapi.testclient import TestClient

SHARED_SECRET = "test-shared-secret"


@pytest.fixture()
def client(
    tmp_path: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> TestClient:
    db_path = tmp_path / "api-test.db"
    monkeypatch.setenv("COORDINATOR_DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("BACKOFF_JITTER_MS", "0")
    monkeypatch.setenv("DEFAULT_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("LEASEMESH_SHARED_SECRET", SHARED_SECRET)

    from coordinator_service import main as main_module

    main_module = importlib.reload(main_module)
    with TestClient(main_module.app) as test_client:
        yield test_client


def _worker_headers() -> dict[str, str]:
    return {"X-LeaseMesh-Secret": SHARED_SECRET}


def _submit(client: TestClient, **body) -> dict:
    response = client.post("/v1/jobs", json={"payload": {"command": "true"}, **body})
    assert response.status_code == 201
    return response.json()


def _claim(client: TestClient, worker_id: str = "worker-a") -> dict | None:
    response = client.post(
        "/v1/lease/claim",
        headers=_worker_headers(),
        json={"worker_id": worker_id, "lease_duration_ms": 300000},
    )
    assert response.status_code == 200
    return response.json()["job"]


def test_health_check(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_submit_get_and_list_jobs(client: TestClient) -> None:
    job = _submit(client)

    assert job["status"] == "pending"
    assert job["max_attempts"] == 2
    assert job["attempt_count"] == 0

    detail = client.get(f"/v1/jobs/{job['id']}")
    assert detail.status_code == 200
    assert detail.json()["payload"] == {"command": "true"}

    listed = client.get("/v1/jobs", params={"status": "PENDING"})
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [job["id"]]

    assert client.get("/v1/jobs", params={"status": "running"}).json() == []
    assert client.get("/v1/jobs", params={"status": "bogus"}).status_code == 422
    assert client.get("/v1/jobs/missing").status_code == 404


def test_submit_with_dedupe_key_returns_existing_job(client: TestClient) -> None:
    first = _submit(client, dedupe_key="repo-42")

    response = client.post(
        "/v1/jobs", json={"payload": {"command": "true"}, "dedupe_key": "repo-42"}
    )

    assert response.status_code == 200
    assert response.json()["id"] == first["id"]


def test_lease_endpoints_require_secret(client: TestClient) -> None:
    response = client.post(
        "/v1/lease/claim", json={"worker_id": "worker-a", "lease_duration_ms": 1000}
    )
    assert response.status_code == 401

    response = client.post(
        "/v1/lease/claim",
        headers={"X-LeaseMesh-Secret": "wrong"},
        json={"worker_id": "worker-a", "lease_duration_ms": 1000},
    )
    assert response.status_code == 401


def test_claim_heartbeat_release_flow(client: TestClient) -> None:
    job = _submit(client)

    claimed = _claim(client)
    assert claimed["id"] == job["id"]
    assert claimed["status"] == "claimed"
    assert claimed["owner_worker_id"] == "worker-a"
    assert _claim(client, "worker-b") is None

    heartbeat = client.post(
        f"/v1/lease/{job['id']}/heartbeat",
        headers=_worker_headers(),
        json={
            "worker_id": "worker-a",
            "lease_duration_ms": 300000,
            "mark_running": True,
            "progress": "Indexing",
            "current_step": 2,
            "total_steps": 5,
        },
    )
    assert heartbeat.status_code == 200
    assert heartbeat.json()["extended"] is True
    assert heartbeat.json()["cancel_requested"] is False

    running = client.get(f"/v1/jobs/{job['id']}").json()
    assert running["status"] == "running"
    assert running["progress"] == "Indexing"
    assert running["current_step"] == 2

    stale = client.post(
        f"/v1/lease/{job['id']}/release",
        headers=_worker_headers(),
        json={"worker_id": "worker-b", "status": "completed"},
    )
    assert stale.status_code == 200
    assert stale.json() == {"released": False, "job": None, "retry_after_ms": None}

    released = client.post(
        f"/v1/lease/{job['id']}/release",
        headers=_worker_headers(),
        json={"worker_id": "worker-a", "status": "completed", "result": {"ok": 1}},
    )
    assert released.status_code == 200
    body = released.json()
    assert body["released"] is True
    assert body["job"]["status"] == "completed"
    assert body["job"]["result"] == {"ok": 1}


def test_failed_release_schedules_retry(client: TestClient) -> None:
    job = _submit(client)

    _claim(client)
    first = client.post(
        f"/v1/lease/{job['id']}/release",
        headers=_worker_headers(),
        json={"worker_id": "worker-a", "status": "failed", "error": "exit 1"},
    ).json()
    assert first["job"]["status"] == "pending"
    assert first["job"]["attempt_count"] == 1
    assert first["retry_after_ms"] == 5000


def test_release_with_invalid_status_is_rejected(client: TestClient) -> None:
    job = _submit(client)
    _claim(client)

    response = client.post(
        f"/v1/lease/{job['id']}/release",
        headers=_worker_headers(),
        json={"worker_id": "worker-a", "status": "running"},
    )

    assert response.status_code == 422


def test_cancel_endpoint(client: TestClient) -> None:
    pending = _submit(client)
    canceled = client.post(f"/v1/jobs/{pending['id']}/cancel")
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"

    owned = _submit(client)
    _claim(client)
    flagged = client.post(f"/v1/jobs/{owned['id']}/cancel").json()
    assert flagged["status"] == "claimed"
    assert flagged["cancel_requested"] is True

    heartbeat = client.post(
        f"/v1/lease/{owned['id']}/heartbeat",
        headers=_worker_headers(),
        json={"worker_id": "worker-a", "lease_duration_ms": 300000},
    )
    assert heartbeat.json()["cancel_requested"] is True

    assert client.post("/v1/jobs/missing/cancel").status_code == 404


def test_sweep_endpoint_reports_nothing_when_leases_are_live(client: TestClient) -> None:
    _submit(client)
    _claim(client)

    response = client.post("/v1/lease/sweep", headers=_worker_headers())

    assert response.status_code == 200
    assert response.json() == {"reclaimed": [], "canceled": []}


def test_worker_secret_guard_is_open_without_a_secret() -> None:
    from fastapi import Depends, FastAPI

    from api.auth import require_worker_secret

    app = FastAPI()
    app.state.worker_secret = ""

    @app.get("/guarded", dependencies=[Depends(require_worker_secret)])
    def guarded() -> dict:
        return {"ok": True}

    with TestClient(app) as open_client:
        assert open_client.get("/guarded").status_code == 200

    app.state.worker_secret = "abc"
    with TestClient(app) as closed_client:
        assert closed_client.get("/guarded").status_code == 401
        allowed = closed_client.get("/guarded", headers={"X-LeaseMesh-Secret": "abc"})
        assert allowed.json() == {"ok": True}
