"""
Reaper for stale executions and expired results.

The reaper runs periodically to:
1. Find active jobs whose owner stopped heartbeating and return them to the
   queue, which gives at-least-once execution across worker crashes
2. Purge completed and failed jobs past their queue's retention policy
"""

import asyncio
import logging
from datetime import datetime, timedelta

from jobqueue.clock import Clock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import JobState, TERMINAL_STATES
from jobqueue.errors import Conflict, JobNotFound, StaleOwnership
from jobqueue.events import EventBus
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.scheduler.scheduler import Scheduler
from jobqueue.store.base import DeliveryAttemptStore, JobStore
from jobqueue.types.events import JobEvent
from jobqueue.types.job import Job
from jobqueue.types.queue import QueueConfig

logger = logging.getLogger(__name__)


def _last_seen(job: Job) -> datetime:
    return job.last_heartbeat_at or job.started_at or job.updated_at


class Reaper:
    """
    Recovers stale jobs and enforces retention.

    Stale jobs already had their attempt counted when they were claimed, so
    reclaiming them does not count another one.
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        configs: dict[str, QueueConfig],
        clock: Clock,
        event_bus: EventBus,
        metrics: MetricsCollector,
        attempt_store: DeliveryAttemptStore | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The job store.
            scheduler: Scheduler that receives reclaimed jobs.
            configs: Queue configs by name, for retention policies.
            clock: Time source.
            event_bus: Bus receiving reclaim and purge events.
            metrics: Metrics collector.
            attempt_store: Delivery attempts purged along with their jobs.
            settings: Interval and staleness settings.
        """
        settings = settings or get_settings()
        self.interval = settings.reaper_interval_seconds
        self.stale_after = timedelta(seconds=settings.stale_after_seconds)

        self._store = store
        self._scheduler = scheduler
        self._configs = configs
        self._clock = clock
        self._event_bus = event_bus
        self._metrics = metrics
        self._attempt_store = attempt_store

        self._running = False
        self._task: asyncio.Task | None = None

    async def reclaim_stale(self) -> int:
        """
        Find and recover active jobs with stale heartbeats.

        Returns:
            Number of jobs reclaimed (requeued or failed).
        """
        cutoff = self._clock.now() - self.stale_after
        reclaimed = 0

        for queue_name in await self._store.queue_names():
            for job in await self._store.list_by_state(queue_name, JobState.ACTIVE):
                if _last_seen(job) >= cutoff:
                    continue
                if await self._reclaim(job, cutoff):
                    reclaimed += 1

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} stale jobs")
        return reclaimed

    async def _reclaim(self, job: Job, cutoff: datetime) -> bool:
        now = self._clock.now()
        owner = job.lease_owner
        reason = str(
            StaleOwnership(
                f"Owner {owner} stopped heartbeating "
                f"(last seen {_last_seen(job).isoformat()})"
            )
        )
        exhausted = not job.is_retryable

        def mutate(record: Job) -> None:
            # A heartbeat may have landed since the listing
            if record.lease_owner != owner or _last_seen(record) >= cutoff:
                raise Conflict(f"Job {record.id} is alive")
            record.lease_owner = None
            record.last_heartbeat_at = None
            record.last_error = reason
            if exhausted:
                record.failed_at = now
            else:
                record.next_run_at = now

        new_state = JobState.FAILED if exhausted else JobState.WAITING
        try:
            updated = await self._store.transition(
                job.id, JobState.ACTIVE, new_state, mutate
            )
        except (Conflict, JobNotFound):
            return False

        logger.warning(
            "Reclaimed stale job",
            extra={
                "job_id": str(job.id),
                "queue_name": job.queue_name,
                "lease_owner": owner,
                "new_state": new_state.value,
            },
        )
        self._metrics.record_stale_reclaimed(job.queue_name)

        if exhausted:
            await self._event_bus.publish(JobEvent.job_failed(updated, now))
        else:
            self._scheduler.schedule(updated)
            await self._event_bus.publish(JobEvent.job_reclaimed(updated, now))
        return True

    async def purge_expired(self) -> int:
        """
        Delete finished jobs beyond each queue's retention policy.

        A finished job is purged when it is older than `max_age_seconds` or
        not among the newest `max_count` finished jobs of its queue. Its
        delivery attempts go with it.

        Returns:
            Number of jobs purged.
        """
        now = self._clock.now()
        purged = 0

        for queue_name, config in self._configs.items():
            retention = config.retention
            if retention.max_count is None and retention.max_age_seconds is None:
                continue

            finished: list[Job] = []
            for state in TERMINAL_STATES:
                finished.extend(await self._store.list_by_state(queue_name, state))
            # Newest first
            finished.sort(key=lambda job: job.finished_at or job.updated_at, reverse=True)

            expired: list[Job] = []
            for index, job in enumerate(finished):
                if retention.max_count is not None and index >= retention.max_count:
                    expired.append(job)
                elif retention.max_age_seconds is not None:
                    age = (now - (job.finished_at or job.updated_at)).total_seconds()
                    if age > retention.max_age_seconds:
                        expired.append(job)

            removed = 0
            for job in expired:
                # Skipped if retried or otherwise revived since the listing
                if not await self._store.delete(job.id, TERMINAL_STATES):
                    continue
                if self._attempt_store is not None:
                    await self._attempt_store.delete_for_job(job.id)
                await self._event_bus.publish(JobEvent.job_purged(job, now))
                removed += 1

            purged += removed
            if removed:
                logger.info(
                    f"Purged {removed} finished jobs",
                    extra={"queue_name": queue_name},
                )

        return purged

    async def run_once(self) -> tuple[int, int]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            (reclaimed, purged) counts.
        """
        reclaimed = await self.reclaim_stale()
        purged = await self.purge_expired()
        return reclaimed, purged

    async def _run(self) -> None:
        logger.info(f"Reaper starting with interval {self.interval}s")

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the reaper loop in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="reaper")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reaper stopped")
