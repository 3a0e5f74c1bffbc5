"""
Type definitions for the job queue.
Contains the domain records, queue configuration, events and API schemas.
"""

from jobqueue.types.api import (
    DeliveryAttemptResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    ErrorResponse,
    JobResponse,
)
from jobqueue.types.events import JobEvent
from jobqueue.types.job import (
    DeliveryAttempt,
    Job,
    JobContext,
    JobResult,
)
from jobqueue.types.queue import (
    HealthReport,
    QueueConfig,
    QueueStats,
    RateLimit,
    RetentionPolicy,
)

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "DeliveryAttemptResponse",
    "ErrorResponse",
    # Job types
    "Job",
    "JobResult",
    "JobContext",
    "DeliveryAttempt",
    # Queue types
    "QueueConfig",
    "RateLimit",
    "RetentionPolicy",
    "QueueStats",
    "HealthReport",
    # Event types
    "JobEvent",
]
