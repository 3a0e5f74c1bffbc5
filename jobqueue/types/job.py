"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from jobqueue.clock import utcnow
from jobqueue.constants import DeliveryOutcome, JobState, TERMINAL_STATES
from jobqueue.scheduler.recurrence import Recurrence


class Job(BaseModel):
    """
    A unit of work tracked through the job lifecycle.

    `id` and `queue_name` never change after creation. Every state change
    goes through JobStore.transition, which bumps `version`.
    """

    id: UUID = Field(default_factory=uuid4)
    queue_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    next_run_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
    recurrence: Recurrence | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    lease_owner: str | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempts_made < self.max_attempts

    @property
    def finished_at(self) -> datetime | None:
        """Completion or failure time, whichever applies."""
        return self.completed_at or self.failed_at

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, state={self.state}, "
            f"attempt={self.attempts_made}/{self.max_attempts})"
        )


class JobResult(BaseModel):
    """
    Result of one job execution.

    Executors return this instead of raising; `retryable=False` marks a
    failure that must not be retried regardless of remaining attempts.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "JobResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, retryable: bool = True) -> "JobResult":
        return cls(success=False, error=error, retryable=retryable)


@dataclass
class JobContext:
    """
    Context passed to executors during execution.
    Contains job metadata for the attempt being run.
    """

    job_id: UUID
    queue_name: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    started_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    @classmethod
    def from_job(cls, job: Job) -> "JobContext":
        return cls(
            job_id=job.id,
            queue_name=job.queue_name,
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=job.lease_owner or "",
            started_at=job.started_at or utcnow(),
        )


class DeliveryAttempt(BaseModel):
    """
    Audit record of one webhook delivery attempt.

    Written as pending before the request and finalised once afterwards.
    """

    id: UUID = Field(default_factory=uuid4)
    job_id: UUID
    attempt_number: int = Field(ge=1)
    url: str
    status_code: int | None = None
    duration_ms: float | None = None
    response_body_snippet: str | None = None
    outcome: DeliveryOutcome = DeliveryOutcome.PENDING
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
