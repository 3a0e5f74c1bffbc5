"""
Read-side queue statistics and health.
"""

import logging

from jobqueue.constants import JobState
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.store.base import JobStore
from jobqueue.types.queue import HealthReport, QueueConfig, QueueStats

logger = logging.getLogger(__name__)


class StatsAggregator:
    """
    Computes per-queue counts from the job store.

    Pure queries: nothing is cached and nothing is written except the
    queue-depth gauge.
    """

    def __init__(
        self,
        store: JobStore,
        configs: dict[str, QueueConfig],
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._configs = configs
        self._metrics = metrics

    async def stats(self, queue_name: str) -> QueueStats:
        """
        Count a queue's jobs by state.

        Unknown queues report all zeros.
        """
        counts = await self._store.count_by_state(queue_name)

        if self._metrics is not None:
            self._metrics.update_queue_depth(queue_name, counts)

        return QueueStats(
            queue_name=queue_name,
            waiting=counts.get(JobState.WAITING, 0),
            active=counts.get(JobState.ACTIVE, 0),
            completed=counts.get(JobState.COMPLETED, 0),
            failed=counts.get(JobState.FAILED, 0),
            delayed=counts.get(JobState.DELAYED, 0),
        )

    async def health(self) -> HealthReport:
        """
        Check every configured queue against its thresholds.

        A queue is flagged when its waiting backlog exceeds
        `backlog_threshold`, or when more jobs are active than
        `concurrency * stall_tolerance` (workers died without releasing).
        """
        issues: list[str] = []
        queues: dict[str, QueueStats] = {}

        for name, config in sorted(self._configs.items()):
            stats = await self.stats(name)
            queues[name] = stats

            if stats.waiting > config.backlog_threshold:
                issues.append(
                    f"{name}: backlog of {stats.waiting} waiting jobs "
                    f"exceeds {config.backlog_threshold}"
                )

            stall_limit = config.concurrency * config.stall_tolerance
            if stats.active > stall_limit:
                issues.append(
                    f"{name}: {stats.active} active jobs exceed "
                    f"{stall_limit:g} (possible stalled workers)"
                )

        if issues:
            logger.warning("Queue health issues", extra={"issues": issues})

        return HealthReport(healthy=not issues, issues=issues, queues=queues)
