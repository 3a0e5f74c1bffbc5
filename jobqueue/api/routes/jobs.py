"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from jobqueue.api.deps import Engine
from jobqueue.constants import API_V1_PREFIX
from jobqueue.types.api import (
    DeliveryAttemptResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    ErrorResponse,
    JobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    responses={422: {"model": ErrorResponse}},
)
async def enqueue_job(request: EnqueueJobRequest, engine: Engine) -> EnqueueJobResponse:
    """
    Enqueue a new job.

    Args:
        request: Job creation request.
        engine: The queue engine.

    Returns:
        EnqueueJobResponse with the job's initial state.
    """
    job_id = await engine.enqueue(
        request.queue_name,
        request.payload,
        delay=request.delay_seconds,
        max_attempts=request.max_attempts,
        recurrence=request.recurrence,
    )
    job = await engine.get_job(job_id)

    return EnqueueJobResponse(
        id=job.id,
        queue_name=job.queue_name,
        state=job.state,
        next_run_at=job.next_run_at,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    responses={404: {"model": ErrorResponse}},
)
async def get_job(job_id: UUID, engine: Engine) -> JobResponse:
    """Get job details by ID."""
    return JobResponse.from_job(await engine.get_job(job_id))


@router.get(
    "/{job_id}/attempts",
    response_model=list[DeliveryAttemptResponse],
    summary="List webhook delivery attempts",
    responses={404: {"model": ErrorResponse}},
)
async def list_attempts(job_id: UUID, engine: Engine) -> list[DeliveryAttemptResponse]:
    attempts = await engine.list_attempts(job_id)
    return [DeliveryAttemptResponse.from_attempt(a) for a in attempts]


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    summary="Retry a failed job",
    description="Re-enqueue a failed job with a fresh attempt budget.",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_job(job_id: UUID, engine: Engine) -> JobResponse:
    """
    Retry a failed job.

    Args:
        job_id: The job UUID.
        engine: The queue engine.

    Returns:
        JobResponse with the requeued job.
    """
    job = await engine.retry_job(job_id)
    logger.info("Job retried via API", extra={"job_id": str(job_id)})
    return JobResponse.from_job(job)
