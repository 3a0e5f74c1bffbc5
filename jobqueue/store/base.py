"""
Storage contracts for jobs and delivery attempts.

JobStore.transition is the only way a job's state changes. It is a
compare-and-swap on the expected state, so two dispatchers racing for the
same job cannot both win.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Sequence
from uuid import UUID

from jobqueue.constants import DeliveryOutcome, JobState
from jobqueue.errors import Conflict, InvalidJob
from jobqueue.types.job import DeliveryAttempt, Job

# Mutator applied to a copy of the job inside a transition. May raise
# Conflict to abort the transition.
JobMutator = Callable[[Job], None]

_IMMUTABLE_FIELDS = ("id", "queue_name", "created_at")


def validate_new_job(job: Job, max_payload_bytes: int) -> None:
    """
    Validate a job before it is stored.

    Raises:
        InvalidJob: If the queue name is empty or the payload is not
            JSON-serialisable or too large.
    """
    if not job.queue_name or not job.queue_name.strip():
        raise InvalidJob("queue_name must not be empty")
    try:
        encoded = json.dumps(job.payload, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise InvalidJob(f"payload is not JSON-serialisable: {exc}") from exc
    size = len(encoded.encode("utf-8"))
    if size > max_payload_bytes:
        raise InvalidJob(
            f"payload is {size} bytes, limit is {max_payload_bytes} bytes"
        )


def apply_transition(
    job: Job,
    expected_state: JobState,
    new_state: JobState,
    mutator: JobMutator | None,
    now: datetime,
) -> Job:
    """
    Produce the post-transition copy of a job.

    Shared by all store implementations so the rules are identical.

    Raises:
        Conflict: If the job is not in `expected_state` or the mutator
            rejects the transition.
    """
    if job.state != expected_state:
        raise Conflict(
            f"Job {job.id} is {job.state}, expected {expected_state}"
        )

    updated = job.model_copy(deep=True)
    if mutator is not None:
        mutator(updated)

    for name in _IMMUTABLE_FIELDS:
        if getattr(updated, name) != getattr(job, name):
            raise ValueError(f"Transition may not change job.{name}")

    updated.state = new_state
    updated.version = job.version + 1
    updated.updated_at = now
    return updated


class JobStore(ABC):
    """Durable mapping from job id to job record."""

    @abstractmethod
    async def create(self, job: Job) -> UUID:
        """
        Store a new job.

        Raises:
            InvalidJob: If the job fails validation.
        """

    @abstractmethod
    async def get(self, job_id: UUID) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFound: If no such job exists.
        """

    @abstractmethod
    async def transition(
        self,
        job_id: UUID,
        expected_state: JobState,
        new_state: JobState,
        mutator: JobMutator | None = None,
    ) -> Job:
        """
        Atomically move a job from `expected_state` to `new_state`.

        Raises:
            JobNotFound: If no such job exists.
            Conflict: If the job's state did not match, a concurrent
                transition won, or the mutator rejected the change.
        """

    @abstractmethod
    async def list_by_state(self, queue_name: str, state: JobState) -> Sequence[Job]:
        """Jobs of a queue in a state, ordered by (next_run_at, created_at)."""

    @abstractmethod
    async def count_by_state(self, queue_name: str) -> dict[JobState, int]:
        """Job counts of a queue for every state (zero-filled)."""

    @abstractmethod
    async def queue_names(self) -> list[str]:
        """Names of all queues that have at least one job."""

    @abstractmethod
    async def touch(self, job_id: UUID, owner: str, at: datetime) -> bool:
        """
        Record a heartbeat for an active job.

        Does not bump the job version. Returns False if the job is no
        longer active or owned by `owner`.
        """

    @abstractmethod
    async def delete(
        self,
        job_id: UUID,
        expected_states: Iterable[JobState] | None = None,
    ) -> bool:
        """
        Delete a job.

        With `expected_states`, the job is only deleted if it is in one of
        them at the moment of deletion.

        Returns:
            True if a job was deleted. Deleting a missing job, or one in
            another state, returns False.
        """


class DeliveryAttemptStore(ABC):
    """Append-only audit trail of webhook delivery attempts."""

    @abstractmethod
    async def add(self, attempt: DeliveryAttempt) -> None:
        """Record a pending attempt before the request is sent."""

    @abstractmethod
    async def finish(
        self,
        attempt_id: UUID,
        outcome: DeliveryOutcome,
        *,
        status_code: int | None,
        duration_ms: float,
        response_body_snippet: str | None,
        error: str | None,
        finished_at: datetime,
    ) -> DeliveryAttempt:
        """
        Finalise a pending attempt. Finalised attempts never change again.

        Raises:
            Conflict: If the attempt is unknown or already finalised.
        """

    @abstractmethod
    async def list_for_job(self, job_id: UUID) -> Sequence[DeliveryAttempt]:
        """Attempts of a job ordered by attempt number."""

    @abstractmethod
    async def delete_for_job(self, job_id: UUID) -> int:
        """Delete all attempts of a purged job. Returns the count removed."""
