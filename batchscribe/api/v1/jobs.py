"""Job management API: submit jobs, poll status, cancel, fetch transcripts."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel
from typing import Optional

from batchscribe.compute.base import BackendJobStatus, BackendState
from batchscribe.jobs.errors import (
    ArtifactNotFoundError,
    DuplicateJobError,
    JobActiveError,
    JobError,
    JobNotFinishedError,
    NotFoundError,
    ValidationError,
)
from batchscribe.jobs.models import JobRecord, JobRequest, JobState

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


_MEDIA_TYPES = {
    ".txt": "text/plain",
    ".srt": "text/plain",
    ".vtt": "text/vtt",
    ".tsv": "text/tab-separated-values",
    ".json": "application/json",
}


def to_http_error(exc: JobError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (NotFoundError, ArtifactNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (DuplicateJobError, JobActiveError, JobNotFinishedError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def job_response(job: JobRecord) -> dict:
    return {
        "job_id": job.job_id,
        "input_key": job.spec.input_key,
        "model": job.spec.model.value,
        "language": job.spec.language,
        "state": job.state.value,
        "attempt_count": job.attempt_count,
        "backend_job_id": job.backend_job_id,
        "created_at": job.created_at.isoformat(),
        "submitted_at": job.submitted_at.isoformat() if job.submitted_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "error": job.last_error.model_dump() if job.last_error else None,
    }


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


class BackendEvent(BaseModel):
    state: BackendState
    detail: str = ""
    retryable: bool = False
    backend_job_id: Optional[str] = None


@router.post("/jobs", response_model=JobSubmitResponse, status_code=202)
async def submit_job(request: JobRequest):
    """Submit a new transcription job."""
    dispatcher = get_dispatcher()
    try:
        job_id = await dispatcher.submit(request)
    except JobError as exc:
        raise to_http_error(exc)
    return JobSubmitResponse(
        job_id=job_id,
        status=JobState.PENDING.value,
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs")
async def list_jobs(state: Optional[JobState] = None):
    """List tracked jobs, optionally filtered by state."""
    jobs = await get_dispatcher().list_jobs(state)
    return {"jobs": [job_response(j) for j in jobs], "count": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    try:
        job = await get_dispatcher().get_status(job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return job_response(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    try:
        job = await get_dispatcher().cancel(job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return job_response(job)


@router.post("/jobs/{job_id}/events")
async def backend_event(job_id: str, event: BackendEvent):
    """Push a backend status change (e.g. forwarded from an event bus)."""
    status = BackendJobStatus(state=event.state, detail=event.detail, retryable=event.retryable)
    try:
        accepted = await get_dispatcher().tracker.notify(job_id, status, event.backend_job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return {"job_id": job_id, "accepted": accepted}


@router.get("/jobs/{job_id}/outputs")
async def list_job_outputs(job_id: str):
    try:
        files = await get_dispatcher().list_outputs(job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return {"job_id": job_id, "files": files}


@router.get("/jobs/{job_id}/outputs/{filename}")
async def get_job_output(job_id: str, filename: str):
    """Download one transcript file of a completed job."""
    try:
        data = await get_dispatcher().read_output(job_id, filename)
    except JobError as exc:
        raise to_http_error(exc)
    ext = filename[filename.rfind("."):] if "." in filename else ""
    media_type = _MEDIA_TYPES.get(ext, "application/octet-stream")
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    """Delete a finished job's artifacts and forget it."""
    try:
        removed = await get_dispatcher().purge(job_id)
    except JobError as exc:
        raise to_http_error(exc)
    return {"job_id": job_id, "deleted_objects": removed}
