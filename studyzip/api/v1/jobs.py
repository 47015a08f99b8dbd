"""Job management API: submit archive jobs and poll their status."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from studyzip.jobs.models import ArchiveJobPayload, Job, JobStatus

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


class JobSubmitRequest(BaseModel):
    dataset_id: str
    dataset_record_ref: str
    instance_count: int = 0
    series_count: int = 0
    study_instance_uid: Optional[str] = None


class JobSubmitResponse(BaseModel):
    job_id: int
    status: str
    message: str


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


def job_to_dict(job: Job) -> dict:
    response = {
        "job_id": job.id,
        "dataset_id": job.payload.dataset_id,
        "status": job.status.value,
        "progress": job.progress,
        "message": job.progress_message,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.status == JobStatus.COMPLETED:
        response["result"] = job.result
    if job.status == JobStatus.FAILED:
        response["error"] = job.error
    return response


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(request: JobSubmitRequest):
    """Queue an archive job directly.

    This bypasses the per-dataset duplicate check; use POST /archive/{id}
    unless a forced rebuild is intended.
    """
    dispatcher = _require_dispatcher()
    job = await dispatcher.submit(ArchiveJobPayload(**request.model_dump()))
    return JobSubmitResponse(
        job_id=job.id,
        status=job.status.value,
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs")
async def list_jobs():
    dispatcher = _require_dispatcher()
    return [job_to_dict(job) for job in await dispatcher.list_jobs()]


@router.get("/jobs/stats")
async def job_stats():
    """Counts per status plus concurrency usage."""
    return await _require_dispatcher().stats()


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: int):
    """Get the current status and result of a job."""
    job = await _require_dispatcher().get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_to_dict(job)
