"""
Endpoints for tracking and cancelling transfer jobs.
"""
from fastapi import APIRouter, HTTPException

from record_transfer.api.schemas.shared import TransferJobListResponse, TransferJobResponse
from record_transfer.domain.imports.jobs import get_job_registry

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=TransferJobResponse)
async def get_job_endpoint(job_id: str):
    job = get_job_registry().get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return TransferJobResponse(success=True, job=job)


@router.get("", response_model=TransferJobListResponse)
async def list_jobs_endpoint(limit: int = 50, offset: int = 0):
    registry = get_job_registry()
    return TransferJobListResponse(
        success=True,
        jobs=registry.list_jobs(limit=limit, offset=offset),
        total_count=registry.count(),
    )


@router.post("/{job_id}/cancel", response_model=TransferJobResponse)
async def cancel_job_endpoint(job_id: str):
    """Request cancellation; a running job stops at its next row or page boundary."""
    try:
        job = get_job_registry().cancel_job(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Job not found")
    return TransferJobResponse(success=True, job=job)
