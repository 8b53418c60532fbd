import asyncio
import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from lease import HeartbeatAck, LeaseCoordinator, StoreUnavailable
from models import FailureKind, Job, JobStatus

logger = logging.getLogger("worker")

SECRET_HEADER = "X-LeaseMesh-Secret"


class LeaseClient(Protocol):
    """What a worker needs from the lease coordinator, bound to one worker id."""

    worker_id: str

    async def claim(self) -> Job | None: ...

    async def heartbeat(
        self,
        job_id: str,
        *,
        mark_running: bool = False,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> HeartbeatAck: ...

    async def release(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        failure_kind: FailureKind = FailureKind.EXECUTION,
    ) -> Job | None: ...

    async def aclose(self) -> None: ...


class LocalLeaseClient:
    """Runs the coordinator in-process against a shared database.

    Coordinator calls are blocking SQLAlchemy work, so each one is pushed to
    a thread to keep the event loop free for heartbeats.
    """

    def __init__(
        self, coordinator: LeaseCoordinator, worker_id: str, lease_duration_ms: int
    ) -> None:
        self._coordinator = coordinator
        self.worker_id = worker_id
        self._lease_duration_ms = lease_duration_ms

    async def claim(self) -> Job | None:
        return await asyncio.to_thread(
            self._coordinator.claim, self.worker_id, self._lease_duration_ms
        )

    async def heartbeat(
        self,
        job_id: str,
        *,
        mark_running: bool = False,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> HeartbeatAck:
        return await asyncio.to_thread(
            lambda: self._coordinator.heartbeat(
                job_id,
                self.worker_id,
                self._lease_duration_ms,
                mark_running=mark_running,
                progress=progress,
                current_step=current_step,
                total_steps=total_steps,
            )
        )

    async def release(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        failure_kind: FailureKind = FailureKind.EXECUTION,
    ) -> Job | None:
        outcome = await asyncio.to_thread(
            lambda: self._coordinator.release(
                job_id,
                self.worker_id,
                status,
                result=result,
                error=error,
                failure_kind=failure_kind,
            )
        )
        return outcome.job if outcome is not None else None

    async def aclose(self) -> None:
        return None


class HttpLeaseClient:
    """Talks to a coordinator service over its `/v1/lease` API."""

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        lease_duration_ms: int,
        *,
        shared_secret: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {SECRET_HEADER: shared_secret} if shared_secret else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self.worker_id = worker_id
        self._lease_duration_ms = lease_duration_ms

    async def _post(
        self, operation: str, path: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise StoreUnavailable(operation, str(exc)) from exc
        except ValueError as exc:
            raise StoreUnavailable(operation, f"malformed response: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreUnavailable(operation, "malformed response: expected an object")
        return data

    @staticmethod
    def _job(operation: str, raw: Any) -> Job:
        try:
            return Job.model_validate(raw)
        except ValidationError as exc:
            raise StoreUnavailable(operation, f"malformed job: {exc}") from exc

    async def claim(self) -> Job | None:
        data = await self._post(
            "claim",
            "/v1/lease/claim",
            {"worker_id": self.worker_id, "lease_duration_ms": self._lease_duration_ms},
        )
        job = data.get("job")
        return self._job("claim", job) if job else None

    async def heartbeat(
        self,
        job_id: str,
        *,
        mark_running: bool = False,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> HeartbeatAck:
        data = await self._post(
            "heartbeat",
            f"/v1/lease/{job_id}/heartbeat",
            {
                "worker_id": self.worker_id,
                "lease_duration_ms": self._lease_duration_ms,
                "mark_running": mark_running,
                "progress": progress,
                "current_step": current_step,
                "total_steps": total_steps,
            },
        )
        return HeartbeatAck(
            extended=bool(data.get("extended")),
            cancel_requested=bool(data.get("cancel_requested")),
        )

    async def release(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        failure_kind: FailureKind = FailureKind.EXECUTION,
    ) -> Job | None:
        data = await self._post(
            "release",
            f"/v1/lease/{job_id}/release",
            {
                "worker_id": self.worker_id,
                "status": status.value,
                "result": result,
                "error": error,
                "failure_kind": failure_kind.value,
            },
        )
        if not data.get("released"):
            return None
        return self._job("release", data.get("job"))

    async def aclose(self) -> None:
        await self._client.aclose()
