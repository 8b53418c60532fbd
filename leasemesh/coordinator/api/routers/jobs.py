from fastapi import APIRouter, Body, HTTPException, Query, Response, status

from api.schemas import JobCreateRequest
from lease import get_coordinator
from models import Job, JobStatus

router = APIRouter(prefix="/v1", tags=["jobs"])


def _parse_job_status(raw: str) -> JobStatus:
    try:
        return JobStatus(raw.strip().lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=422, detail=f"Unsupported status '{raw}'"
        ) from exc


@router.post("/jobs", response_model=Job, status_code=status.HTTP_201_CREATED)
def create_job_route(
    response: Response,
    payload: JobCreateRequest = Body(
        ...,
        examples=[
            {
                "payload": {
                    "command": ["analyze", "--repo", "https://example.com/repo.git"],
                    "timeout_seconds": 1800,
                },
                "max_attempts": 3,
                "dedupe_key": "repo-42",
            }
        ],
    ),
) -> Job:
    """Submit a job in `pending` state.

    When `dedupe_key` matches a job that has not finished yet, that job is
    returned with status 200 instead of creating a second one.
    """

    job, created = get_coordinator().submit(
        payload.payload,
        max_attempts=payload.max_attempts,
        dedupe_key=payload.dedupe_key,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return job


@router.get("/jobs", response_model=list[Job])
def list_jobs_route(
    status_filter: str | None = Query(default=None, alias="status"),
    owner: str | None = Query(default=None),
) -> list[Job]:
    """List jobs, newest first, optionally filtered by status and lease owner."""

    status_value = (
        _parse_job_status(status_filter) if status_filter is not None else None
    )
    return get_coordinator().store.list_jobs(
        status=status_value, owner_worker_id=owner
    )


@router.get("/jobs/{job_id}", response_model=Job)
def get_job_route(job_id: str) -> Job:
    job = get_coordinator().get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job


@router.post("/jobs/{job_id}/cancel", response_model=Job)
def cancel_job_route(job_id: str) -> Job:
    """Request cancellation.

    A `pending` job is canceled immediately. A claimed or running job keeps
    its status and lease; its worker sees `cancel_requested` on the next
    heartbeat and releases it as `canceled`. Finished jobs are returned unchanged.
    """

    try:
        return get_coordinator().request_cancel(job_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=404, detail=f"Job '{job_id}' not found"
        ) from exc
