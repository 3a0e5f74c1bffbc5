"""
In-memory store implementations.

Suitable for single-process use and tests. Transitions are serialised per
job id; different jobs can be mutated concurrently.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Sequence
from uuid import UUID

from jobqueue.clock import Clock, SystemClock
from jobqueue.config import get_settings
from jobqueue.constants import DeliveryOutcome, JobState
from jobqueue.errors import Conflict, JobNotFound
from jobqueue.store.base import (
    DeliveryAttemptStore,
    JobMutator,
    JobStore,
    apply_transition,
    validate_new_job,
)
from jobqueue.types.job import DeliveryAttempt, Job

logger = logging.getLogger(__name__)


class MemoryJobStore(JobStore):
    """Job store held in a dict."""

    def __init__(
        self,
        clock: Clock | None = None,
        max_payload_bytes: int | None = None,
    ):
        self._clock = clock or SystemClock()
        self._max_payload_bytes = (
            max_payload_bytes or get_settings().max_payload_bytes
        )
        self._jobs: dict[UUID, Job] = {}
        self._locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, job: Job) -> UUID:
        validate_new_job(job, self._max_payload_bytes)
        if job.id in self._jobs:
            raise Conflict(f"Job {job.id} already exists")
        self._jobs[job.id] = job.model_copy(deep=True)
        logger.debug(
            "Created job",
            extra={"job_id": str(job.id), "queue_name": job.queue_name},
        )
        return job.id

    async def get(self, job_id: UUID) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job.model_copy(deep=True)

    async def transition(
        self,
        job_id: UUID,
        expected_state: JobState,
        new_state: JobState,
        mutator: JobMutator | None = None,
    ) -> Job:
        if job_id not in self._jobs:
            raise JobNotFound(f"Job {job_id} not found")
        async with self._locks[job_id]:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(f"Job {job_id} not found")
            updated = apply_transition(
                current, expected_state, new_state, mutator, self._clock.now()
            )
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_state(self, queue_name: str, state: JobState) -> Sequence[Job]:
        jobs = [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if job.queue_name == queue_name and job.state == state
        ]
        jobs.sort(key=lambda job: (job.next_run_at, job.created_at))
        return jobs

    async def count_by_state(self, queue_name: str) -> dict[JobState, int]:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            if job.queue_name == queue_name:
                counts[job.state] += 1
        return counts

    async def queue_names(self) -> list[str]:
        return sorted({job.queue_name for job in self._jobs.values()})

    async def touch(self, job_id: UUID, owner: str, at: datetime) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE or job.lease_owner != owner:
            return False
        job.last_heartbeat_at = at
        return True

    async def delete(
        self,
        job_id: UUID,
        expected_states: Iterable[JobState] | None = None,
    ) -> bool:
        if job_id not in self._jobs:
            return False
        async with self._locks[job_id]:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if expected_states is not None and job.state not in set(expected_states):
                return False
            del self._jobs[job_id]
        self._locks.pop(job_id, None)
        return True


class MemoryDeliveryAttemptStore(DeliveryAttemptStore):
    """Delivery attempts held in a dict keyed by job id."""

    def __init__(self):
        self._attempts: dict[UUID, list[DeliveryAttempt]] = defaultdict(list)
        self._index: dict[UUID, DeliveryAttempt] = {}

    async def add(self, attempt: DeliveryAttempt) -> None:
        if attempt.id in self._index:
            raise Conflict(f"Delivery attempt {attempt.id} already recorded")
        stored = attempt.model_copy()
        self._attempts[attempt.job_id].append(stored)
        self._index[attempt.id] = stored

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
        pending = self._index.get(attempt_id)
        if pending is None or pending.outcome != DeliveryOutcome.PENDING:
            raise Conflict(f"Delivery attempt {attempt_id} is not pending")

        finished = pending.model_copy(
            update={
                "outcome": outcome,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "response_body_snippet": response_body_snippet,
                "error": error,
                "finished_at": finished_at,
            }
        )
        attempts = self._attempts[pending.job_id]
        attempts[attempts.index(pending)] = finished
        self._index[attempt_id] = finished
        return finished.model_copy()

    async def list_for_job(self, job_id: UUID) -> Sequence[DeliveryAttempt]:
        attempts = self._attempts.get(job_id, [])
        return sorted(
            (attempt.model_copy() for attempt in attempts),
            key=lambda attempt: (attempt.attempt_number, attempt.created_at),
        )

    async def delete_for_job(self, job_id: UUID) -> int:
        attempts = self._attempts.pop(job_id, [])
        for attempt in attempts:
            self._index.pop(attempt.id, None)
        return len(attempts)
