from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sse_starlette.sse import EventSourceResponse

from ..events import SSE_SEP, heartbeat
from ..exceptions import InvalidTransitionError, JobNotFoundError
from ..models import JobSource, JobSpec
from ..stream import changes_stream, progress_stream
from ..tracker import JobTracker
from .deps import get_tracker
from .schemas import (
    CancelJobResponse,
    CreateJobRequest,
    CreateJobResponse,
    JobResponse,
    ListJobsResponse,
    ProgressListResponse,
    ProgressRecordResponse,
)

SSE_HEADERS = {"Cache-Control": "no-cache, no-transform"}


def _map_job(job) -> JobResponse:
    return JobResponse(**job.to_dict())


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Job not found: {job_id}")


def _event_source(tracker: JobTracker, content) -> EventSourceResponse:
    return EventSourceResponse(
        content,
        headers=SSE_HEADERS,
        sep=SSE_SEP,
        ping=tracker.config.heartbeat_interval,
        ping_message_factory=heartbeat,
    )


def get_router() -> APIRouter:
    """Get FastAPI router for scan job endpoints."""
    router = APIRouter(prefix="/jobs", tags=["Jobs"])

    @router.post("", response_model=CreateJobResponse, status_code=status.HTTP_202_ACCEPTED)
    async def create_job(
        body: CreateJobRequest,
        tracker: JobTracker = Depends(get_tracker),
    ) -> CreateJobResponse:
        """Queue a new scan."""
        spec = JobSpec(
            source=JobSource(bucket=body.bucket, key=body.object_key, path=body.path),
            mode=body.mode,
            format=body.format,
            refs=body.refs,
            id=body.id,
        )
        try:
            job = await tracker.create_job(spec)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return CreateJobResponse(
            job_id=job.id,
            status=job.status,
            links={
                "self": f"/api/v1/jobs/{job.id}",
                "events": f"/api/v1/jobs/{job.id}/events",
                "cancel": f"/api/v1/jobs/{job.id}/cancel",
            },
        )

    @router.get("", response_model=ListJobsResponse)
    async def list_jobs(
        limit: int = Query(100, ge=1, le=500),
        tracker: JobTracker = Depends(get_tracker),
    ) -> ListJobsResponse:
        """List the most recent jobs."""
        jobs = await tracker.list_jobs(limit)
        return ListJobsResponse(items=[_map_job(j) for j in jobs], limit=limit)

    @router.get("/events")
    async def job_list_events(
        limit: int = Query(100, ge=1, le=500),
        tracker: JobTracker = Depends(get_tracker),
    ):
        """Snapshot of recent jobs, then live changes."""
        return _event_source(tracker, changes_stream(tracker, snapshot_limit=limit))

    @router.get("/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        tracker: JobTracker = Depends(get_tracker),
    ) -> JobResponse:
        """Get one job."""
        try:
            job = await tracker.get_job(job_id)
        except JobNotFoundError:
            raise _not_found(job_id) from None
        return _map_job(job)

    @router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_job(
        job_id: str,
        tracker: JobTracker = Depends(get_tracker),
    ) -> None:
        """Delete a job and its progress log."""
        if not await tracker.delete_job(job_id):
            raise _not_found(job_id)

    @router.post("/{job_id}/cancel", response_model=CancelJobResponse)
    async def cancel_job(
        job_id: str,
        tracker: JobTracker = Depends(get_tracker),
    ) -> CancelJobResponse:
        """Cancel a running scan."""
        try:
            cancelled = await tracker.cancel_job(job_id)
            job = await tracker.get_job(job_id)
        except JobNotFoundError:
            raise _not_found(job_id) from None
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        if not cancelled:
            raise HTTPException(
                status_code=409,
                detail=f"Job {job_id} is not running ({job.status.value})",
            )
        return CancelJobResponse(job_id=job.id, cancelled=True, status=job.status)

    @router.get("/{job_id}/events")
    async def job_progress_events(
        job_id: str,
        tracker: JobTracker = Depends(get_tracker),
    ):
        """Progress backlog, then live progress records."""
        try:
            await tracker.get_job(job_id)
        except JobNotFoundError:
            raise _not_found(job_id) from None
        return _event_source(tracker, progress_stream(tracker, job_id))

    @router.get("/{job_id}/events/list", response_model=ProgressListResponse)
    async def list_progress(
        job_id: str,
        limit: int = Query(1000, ge=1, le=10000),
        tracker: JobTracker = Depends(get_tracker),
    ) -> ProgressListResponse:
        """Every recorded progress line for a job, oldest first."""
        try:
            records = await tracker.list_progress(job_id, limit)
        except JobNotFoundError:
            raise _not_found(job_id) from None
        return ProgressListResponse(
            job_id=job_id,
            items=[ProgressRecordResponse(**r.to_dict()) for r in records],
        )

    return router
