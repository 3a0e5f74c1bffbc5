"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import DeliveryOutcome, JobState
from jobqueue.scheduler.recurrence import Recurrence
from jobqueue.types.job import DeliveryAttempt, Job


class EnqueueJobRequest(BaseModel):
    """Request body for enqueuing a job."""

    queue_name: str = Field(..., description="Target queue")
    payload: dict[str, Any] = Field(..., description="Job payload data")
    delay_seconds: float | None = Field(
        default=None, ge=0, description="Delay before the first run"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, description="Maximum attempts, queue default if unset"
    )
    recurrence: Recurrence | None = Field(
        default=None, description="Interval or cron rule for repeating jobs"
    )


class EnqueueJobResponse(BaseModel):
    """Response body after enqueuing a job."""

    id: UUID
    queue_name: str
    state: JobState
    next_run_at: datetime
    message: str = "Job enqueued"


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    queue_name: str
    payload: dict[str, Any]
    state: JobState
    attempts_made: int
    max_attempts: int
    next_run_at: datetime
    last_error: str | None
    recurrence: Recurrence | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls.model_validate(job.model_dump())


class DeliveryAttemptResponse(BaseModel):
    """One webhook delivery attempt."""

    id: UUID
    attempt_number: int
    url: str
    status_code: int | None
    duration_ms: float | None
    response_body_snippet: str | None
    outcome: DeliveryOutcome
    error: str | None
    created_at: datetime
    finished_at: datetime | None

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> "DeliveryAttemptResponse":
        return cls.model_validate(attempt.model_dump())


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
