"""
Jobs API Router - queue job status.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from sermonclips.dependencies import get_queue
from sermonclips.schemas.responses import JobStatusResponse
from sermonclips.services.job_queue import JobQueue

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, queue: JobQueue = Depends(get_queue)) -> JobStatusResponse:
    """
    Get the status of a queued job.

    Returns progress, the result once completed, and the failure reason
    once retries are exhausted.
    """
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )

    return JobStatusResponse(
        job_id=job.id,
        name=job.name,
        status=job.api_status,
        progress=job.progress,
        attempts_made=job.attempts_made,
        result=job.result,
        error=job.failed_reason,
        processed_on=job.processed_on,
        finished_on=job.finished_on,
        timestamp=job.created_at,
    )
