"""
Event type definitions for the event bus.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobqueue.constants import (
    EVENT_JOB_ACTIVE,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_ENQUEUED,
    EVENT_JOB_FAILED,
    EVENT_JOB_PROMOTED,
    EVENT_JOB_PURGED,
    EVENT_JOB_RECLAIMED,
    EVENT_JOB_RESCHEDULED,
    EVENT_JOB_RETRIED,
    EVENT_JOB_RETRY_SCHEDULED,
    JobState,
)
from jobqueue.types.job import Job


class JobEvent(BaseModel):
    """
    Event emitted when a job changes state.
    Delivered to EventBus subscribers.
    """

    event_type: str
    job_id: UUID
    queue_name: str
    state: JobState
    attempt: int
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def _for(
        cls,
        event_type: str,
        job: Job,
        timestamp: datetime,
        data: dict[str, Any] | None = None,
    ) -> "JobEvent":
        return cls(
            event_type=event_type,
            job_id=job.id,
            queue_name=job.queue_name,
            state=job.state,
            attempt=job.attempts_made,
            timestamp=timestamp,
            data=data,
        )

    @classmethod
    def job_enqueued(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a job enqueued event."""
        return cls._for(
            EVENT_JOB_ENQUEUED,
            job,
            timestamp,
            {"next_run_at": job.next_run_at.isoformat()},
        )

    @classmethod
    def job_promoted(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a delayed job became waiting event."""
        return cls._for(EVENT_JOB_PROMOTED, job, timestamp)

    @classmethod
    def job_active(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a job claimed for execution event."""
        return cls._for(
            EVENT_JOB_ACTIVE, job, timestamp, {"lease_owner": job.lease_owner}
        )

    @classmethod
    def job_completed(
        cls,
        job: Job,
        timestamp: datetime,
        output: dict[str, Any] | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls._for(EVENT_JOB_COMPLETED, job, timestamp, {"output": output})

    @classmethod
    def job_retry_scheduled(
        cls,
        job: Job,
        timestamp: datetime,
        delay_seconds: float,
    ) -> "JobEvent":
        """Create a job failed and will be retried event."""
        return cls._for(
            EVENT_JOB_RETRY_SCHEDULED,
            job,
            timestamp,
            {"error": job.last_error, "delay_seconds": delay_seconds},
        )

    @classmethod
    def job_failed(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a job terminally failed event."""
        return cls._for(
            EVENT_JOB_FAILED,
            job,
            timestamp,
            {"error": job.last_error, "total_attempts": job.attempts_made},
        )

    @classmethod
    def job_rescheduled(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a recurring job scheduled for its next run event."""
        return cls._for(
            EVENT_JOB_RESCHEDULED,
            job,
            timestamp,
            {"next_run_at": job.next_run_at.isoformat()},
        )

    @classmethod
    def job_reclaimed(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a stale active job recovered event."""
        return cls._for(
            EVENT_JOB_RECLAIMED, job, timestamp, {"error": job.last_error}
        )

    @classmethod
    def job_retried(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a failed job manually re-enqueued event."""
        return cls._for(EVENT_JOB_RETRIED, job, timestamp)

    @classmethod
    def job_purged(cls, job: Job, timestamp: datetime) -> "JobEvent":
        """Create a job removed by retention event."""
        return cls._for(EVENT_JOB_PURGED, job, timestamp)
