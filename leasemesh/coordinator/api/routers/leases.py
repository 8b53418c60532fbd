from fastapi import APIRouter, Body, Depends, HTTPException

from api.auth import require_worker_secret
from api.schemas import (
    ClaimRequest,
    ClaimResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    ReleaseRequest,
    ReleaseResponse,
    SweepResponse,
)
from lease import get_coordinator

router = APIRouter(
    prefix="/v1/lease",
    tags=["lease"],
    dependencies=[Depends(require_worker_secret)],
)


@router.post("/claim", response_model=ClaimResponse)
def claim_route(
    payload: ClaimRequest = Body(
        ...,
        examples=[{"worker_id": "host-a-worker-1f2e3d4c", "lease_duration_ms": 300000}],
    ),
) -> ClaimResponse:
    """Atomically claim the oldest eligible job for `worker_id`.

    Eligible means `pending` and due, or `claimed`/`running` with an expired
    lease. Returns `{"job": null}` when nothing is claimable.
    """

    job = get_coordinator().claim(payload.worker_id, payload.lease_duration_ms)
    return ClaimResponse(job=job)


@router.post("/{job_id}/heartbeat", response_model=HeartbeatResponse)
def heartbeat_route(job_id: str, payload: HeartbeatRequest) -> HeartbeatResponse:
    """Extend the lease held by `worker_id`.

    `extended: false` means the lease is gone and the worker must abort.
    """

    ack = get_coordinator().heartbeat(
        job_id,
        payload.worker_id,
        payload.lease_duration_ms,
        mark_running=payload.mark_running,
        progress=payload.progress,
        current_step=payload.current_step,
        total_steps=payload.total_steps,
    )
    return HeartbeatResponse(
        extended=ack.extended,
        cancel_requested=ack.cancel_requested,
        lease_expires_at=ack.lease_expires_at,
    )


@router.post("/{job_id}/release", response_model=ReleaseResponse)
def release_route(job_id: str, payload: ReleaseRequest) -> ReleaseResponse:
    """Record an execution outcome. A no-op when `worker_id` no longer owns the job."""

    try:
        outcome = get_coordinator().release(
            job_id,
            payload.worker_id,
            payload.status,
            result=payload.result,
            error=payload.error,
            failure_kind=payload.failure_kind,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if outcome is None:
        return ReleaseResponse(released=False)
    return ReleaseResponse(
        released=True, job=outcome.job, retry_after_ms=outcome.retry_after_ms
    )


@router.post("/sweep", response_model=SweepResponse)
def sweep_route() -> SweepResponse:
    """Run the expiry sweep now instead of waiting for the background task."""

    report = get_coordinator().sweep_expired()
    return SweepResponse(reclaimed=report.reclaimed, canceled=report.canceled)
