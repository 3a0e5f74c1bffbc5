"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (claimed by a dispatcher)
    - DELAYED -> WAITING (due time reached)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED (retry scheduled with backoff, or next recurrence)
    - ACTIVE -> FAILED (attempts exhausted)
    - ACTIVE -> WAITING (stale ownership reclaimed)
    - FAILED -> WAITING (manual retry)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED})
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class DeliveryOutcome(StrEnum):
    """Outcome of a single webhook delivery attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_CAP_SECONDS = 3600.0
DEFAULT_JITTER = 0.2

# API constants
API_V1_PREFIX = "/v1"

# Webhook wire format
WEBHOOK_EVENT_HEADER = "X-Webhook-Event"
WEBHOOK_DELIVERY_HEADER = "X-Webhook-Delivery"
WEBHOOK_TIMESTAMP_HEADER = "X-Webhook-Timestamp"
WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"
WEBHOOK_SIGNATURE_VERSION = "v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_STALE_RECLAIMED = "jobs_stale_reclaimed_total"
METRIC_WEBHOOK_DELIVERIES = "webhook_deliveries_total"
METRIC_WEBHOOK_LATENCY = "webhook_delivery_latency_seconds"

# Trace span names
SPAN_EXECUTE_JOB = "execute_job"
SPAN_DELIVER_WEBHOOK = "deliver_webhook"

# Event types
EVENT_JOB_ENQUEUED = "job.enqueued"
EVENT_JOB_PROMOTED = "job.promoted"
EVENT_JOB_ACTIVE = "job.active"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_RETRY_SCHEDULED = "job.retry_scheduled"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_RESCHEDULED = "job.rescheduled"
EVENT_JOB_RECLAIMED = "job.reclaimed"
EVENT_JOB_RETRIED = "job.retried"
EVENT_JOB_PURGED = "job.purged"
