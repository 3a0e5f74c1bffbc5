"""
Due-time ordered ready queue.

The scheduler keeps one min-heap per queue keyed by (next_run_at, sequence).
Heap entries are only hints: the store stays authoritative, so entries for
jobs that were claimed elsewhere, rescheduled or deleted are dropped lazily
when they reach the top.
"""

import heapq
import itertools
import logging
from datetime import datetime, timedelta
from uuid import UUID

from jobqueue.clock import Clock
from jobqueue.constants import JobState, PENDING_STATES
from jobqueue.errors import Conflict, JobNotFound
from jobqueue.events import EventBus
from jobqueue.store.base import JobStore
from jobqueue.types.events import JobEvent
from jobqueue.types.job import Job

logger = logging.getLogger(__name__)

HeapEntry = tuple[datetime, int, UUID]


class Scheduler:
    """
    Computes when jobs become eligible and hands out the earliest due one.

    Ties on next_run_at are broken by insertion order.
    """

    def __init__(
        self,
        store: JobStore,
        clock: Clock,
        event_bus: EventBus | None = None,
    ):
        self._store = store
        self._clock = clock
        self._event_bus = event_bus
        self._heaps: dict[str, list[HeapEntry]] = {}
        self._sequence = itertools.count()

    def _heap(self, queue_name: str) -> list[HeapEntry]:
        return self._heaps.setdefault(queue_name, [])

    def schedule(self, job: Job) -> None:
        """Track a waiting or delayed job under its next_run_at."""
        if job.state not in PENDING_STATES:
            return
        heapq.heappush(
            self._heap(job.queue_name),
            (job.next_run_at, next(self._sequence), job.id),
        )

    async def load(self, queue_name: str) -> int:
        """
        Rebuild the queue's heap from the store.

        Used on start and on periodic resync so jobs written by other
        processes are seen.

        Returns:
            Number of pending jobs now tracked.
        """
        pending: list[Job] = []
        for state in PENDING_STATES:
            pending.extend(await self._store.list_by_state(queue_name, state))
        pending.sort(key=lambda job: (job.next_run_at, job.created_at))

        self._heaps[queue_name] = []
        for job in pending:
            self.schedule(job)

        logger.debug(
            "Loaded pending jobs",
            extra={"queue_name": queue_name, "count": len(pending)},
        )
        return len(pending)

    def next_due_at(self, queue_name: str) -> datetime | None:
        """Due time of the earliest tracked job, if any."""
        heap = self._heaps.get(queue_name)
        return heap[0][0] if heap else None

    def pending_count(self, queue_name: str) -> int:
        return len(self._heaps.get(queue_name, ()))

    async def next_ready(self, queue_name: str, now: datetime) -> Job | None:
        """
        Pop the earliest job whose next_run_at <= now.

        A due delayed job is promoted to waiting before it is returned.
        Returns None when the earliest job is still in the future.
        """
        heap = self._heaps.get(queue_name)

        while heap and heap[0][0] <= now:
            due_at, _, job_id = heapq.heappop(heap)

            try:
                job = await self._store.get(job_id)
            except JobNotFound:
                continue

            if job.state not in PENDING_STATES:
                continue
            if job.next_run_at != due_at:
                # Rescheduled since this entry was pushed
                if job.next_run_at > now:
                    self.schedule(job)
                    continue

            if job.state == JobState.DELAYED:
                try:
                    job = await self._store.transition(
                        job.id, JobState.DELAYED, JobState.WAITING
                    )
                except Conflict:
                    continue
                if self._event_bus is not None:
                    await self._event_bus.publish(
                        JobEvent.job_promoted(job, self._clock.now())
                    )

            return job

        return None

    async def reschedule(self, job: Job, delay: float, error: str | None = None) -> Job:
        """
        Move an active job back to delayed, due after `delay` seconds.

        Raises:
            Conflict: If the job is no longer active under the same owner.
        """
        owner = job.lease_owner
        next_run_at = self._clock.now() + timedelta(seconds=delay)

        def mutate(record: Job) -> None:
            if record.lease_owner != owner:
                raise Conflict(f"Job {record.id} is owned by {record.lease_owner}")
            record.next_run_at = next_run_at
            record.last_error = error
            record.lease_owner = None
            record.last_heartbeat_at = None

        updated = await self._store.transition(
            job.id, JobState.ACTIVE, JobState.DELAYED, mutate
        )
        self.schedule(updated)
        return updated

    async def complete_recurring(self, job: Job) -> Job:
        """
        Reset a recurring job for its next occurrence after a successful run.

        The next occurrence is computed from now, so missed occurrences do
        not pile up. Attempts start again from zero.

        Raises:
            Conflict: If the job is no longer active under the same owner.
        """
        if job.recurrence is None:
            raise ValueError(f"Job {job.id} has no recurrence rule")

        owner = job.lease_owner
        now = self._clock.now()
        next_run_at = job.recurrence.next_after(now)

        def mutate(record: Job) -> None:
            if record.lease_owner != owner:
                raise Conflict(f"Job {record.id} is owned by {record.lease_owner}")
            record.next_run_at = next_run_at
            record.attempts_made = 0
            record.last_error = None
            record.completed_at = now
            record.lease_owner = None
            record.last_heartbeat_at = None

        new_state = JobState.DELAYED if next_run_at > now else JobState.WAITING
        updated = await self._store.transition(
            job.id, JobState.ACTIVE, new_state, mutate
        )
        self.schedule(updated)
        return updated
