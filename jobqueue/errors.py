"""
Error taxonomy for the job queue.

Only InvalidJob and JobNotFound are raised to callers of the enqueue/read API.
The remaining kinds describe lifecycle outcomes that surface through job state,
events and stats.
"""


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class InvalidJob(JobQueueError):
    """Malformed enqueue input: bad queue name, options or payload."""


class JobNotFound(JobQueueError):
    """No job exists with the requested id."""


class Conflict(JobQueueError):
    """A compare-and-swap transition lost against a concurrent writer."""


class TransientDeliveryFailure(JobQueueError):
    """Network error, timeout or non-2xx response during webhook delivery."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TerminalFailure(JobQueueError):
    """
    A failure that must not be retried.

    Executors may raise it to fail a job immediately, whatever attempts
    remain.
    """


class StaleOwnership(JobQueueError):
    """An active job whose owning worker stopped heartbeating."""


class InvalidSignature(JobQueueError):
    """A webhook signature header failed verification."""
