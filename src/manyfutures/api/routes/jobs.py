"""Schedule job API endpoints.

This module implements the operator surface of the schedule queue:
- GET /api/jobs/stats - Job counts per status
- GET /api/jobs - Paginated jobs in one status (default: failed, for alerting)
- GET /api/jobs/{job_id} - One job
- POST /api/jobs/{job_id}/cancel - Cancel a non-terminal job
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from manyfutures.api.dependencies import get_uow_factory
from manyfutures.core.timezone import utcnow
from manyfutures.models.schedule_job import InvalidStateTransition, JobStatus, ScheduleJob
from manyfutures.services.exceptions import JobNotFoundError

logger = structlog.get_logger()
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# Request/Response Models


class JobDTO(BaseModel):
    """Response model for a single schedule job."""

    id: UUID
    subscription_id: UUID
    status: JobStatus
    priority: int
    generation_start_time: datetime
    target_delivery_time: datetime
    attempt_count: int
    max_attempts: int
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    result_artifact_id: UUID | None = None
    idempotency_key: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: ScheduleJob) -> "JobDTO":
        return cls.model_validate(job, from_attributes=True)


class JobsResponse(BaseModel):
    """Response model for paginated jobs list."""

    jobs: list[JobDTO] = Field(..., description="Jobs for current page")
    status: JobStatus = Field(..., description="Status the list is filtered by")
    offset: int = Field(..., description="Number of jobs skipped (pagination offset)")
    limit: int = Field(..., description="Maximum number of jobs per page")


class JobStatsResponse(BaseModel):
    """Response model for job counts."""

    counts: dict[str, int] = Field(..., description="Number of jobs per status")
    total: int


class CancelJobRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# API Endpoints


@router.get("/stats", response_model=JobStatsResponse)
async def get_job_stats(uow_factory=Depends(get_uow_factory)) -> JobStatsResponse:
    """Count jobs per status."""
    async with await uow_factory() as uow:
        counts = await uow.jobs.count_by_status()

    return JobStatsResponse(
        counts={job_status.value: count for job_status, count in counts.items()},
        total=sum(counts.values()),
    )


@router.get("", response_model=JobsResponse)
async def list_jobs(
    job_status: JobStatus = Query(JobStatus.FAILED, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> JobsResponse:
    """List jobs in one status, most recently updated first.

    Example:
        GET /api/jobs?status=failed&limit=20
    """
    async with await uow_factory() as uow:
        jobs = await uow.jobs.list_by_status(job_status, limit=limit, offset=offset)

    return JobsResponse(
        jobs=[JobDTO.from_job(job) for job in jobs],
        status=job_status,
        offset=offset,
        limit=limit,
    )


@router.get("/{job_id}", response_model=JobDTO)
async def get_job(job_id: UUID, uow_factory=Depends(get_uow_factory)) -> JobDTO:
    """Get one job.

    Raises:
        HTTPException 404: Job not found
    """
    async with await uow_factory() as uow:
        job = await uow.jobs.get_by_id(job_id)

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobDTO.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobDTO)
async def cancel_job(
    job_id: UUID,
    request: CancelJobRequest | None = None,
    uow_factory=Depends(get_uow_factory),
) -> JobDTO:
    """Cancel a pending or processing job.

    A worker currently generating the job is not interrupted; its completion
    is rejected and its work discarded.

    Raises:
        HTTPException 404: Job not found
        HTTPException 409: Job already completed or failed
    """
    reason = request.reason if request else None
    try:
        async with await uow_factory() as uow:
            job = await uow.jobs.cancel(job_id, utcnow(), reason=reason)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("api.job_cancelled", job_id=str(job_id), reason=reason)
    return JobDTO.from_job(job)
