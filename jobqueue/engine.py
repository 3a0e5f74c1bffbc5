"""
Queue engine: the public entry point.

One QueueEngine wires a job store to a scheduler, dispatcher, reaper,
stats aggregator and event bus. Nothing is global, so several engines can
run side by side (tests do).
"""

import logging
import random
from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID

import httpx
from pydantic import ValidationError

from jobqueue.clock import Clock, SystemClock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import JobState
from jobqueue.errors import InvalidJob
from jobqueue.events import EventBus
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.reaper.main import Reaper
from jobqueue.scheduler.recurrence import Recurrence
from jobqueue.scheduler.scheduler import Scheduler
from jobqueue.stats import StatsAggregator
from jobqueue.store.base import DeliveryAttemptStore, JobStore
from jobqueue.store.memory import MemoryDeliveryAttemptStore
from jobqueue.types.events import JobEvent
from jobqueue.types.job import DeliveryAttempt, Job
from jobqueue.types.queue import HealthReport, QueueConfig, QueueStats
from jobqueue.webhooks.executor import WebhookDeliveryExecutor
from jobqueue.worker.dispatcher import Dispatcher, QueueRuntime
from jobqueue.worker.handlers import JobExecutor, validate_payload
from jobqueue.worker.rate_limit import SlidingWindowRateLimiter
from jobqueue.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


class QueueEngine:
    """
    At-least-once job queue.

    Example:
        engine = QueueEngine(MemoryJobStore())
        engine.add_queue(QueueConfig(name="emails"), FunctionExecutor(send))
        await engine.start()
        job_id = await engine.enqueue("emails", {"to": "a@example.com"})
    """

    def __init__(
        self,
        store: JobStore,
        attempt_store: DeliveryAttemptStore | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        event_bus: EventBus | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Job store.
            attempt_store: Webhook attempt store. In-memory if omitted.
            clock: Time source. Wall clock if omitted.
            settings: Engine settings. Environment settings if omitted.
            metrics: Metrics collector with its own registry if omitted.
            event_bus: Event bus. A new one if omitted.
            rng: Random source for backoff jitter.
        """
        self.settings = settings or get_settings()
        self.store = store
        self.attempt_store = attempt_store or MemoryDeliveryAttemptStore()
        self.clock = clock or SystemClock()
        self.metrics = metrics or MetricsCollector()
        self.events = event_bus or EventBus()
        self._rng = rng

        self._configs: dict[str, QueueConfig] = {}
        self._runtimes: dict[str, QueueRuntime] = {}
        self._webhook_executors: list[WebhookDeliveryExecutor] = []

        self.scheduler = Scheduler(store, self.clock, self.events)
        self.dispatcher = Dispatcher(
            store,
            self.scheduler,
            self._runtimes,
            self.clock,
            self.events,
            self.metrics,
            settings=self.settings,
        )
        self.reaper = Reaper(
            store,
            self.scheduler,
            self._configs,
            self.clock,
            self.events,
            self.metrics,
            attempt_store=self.attempt_store,
            settings=self.settings,
        )
        self._stats = StatsAggregator(store, self._configs, self.metrics)

    @property
    def queues(self) -> dict[str, QueueConfig]:
        return dict(self._configs)

    def add_queue(
        self,
        config: QueueConfig | str,
        executor: JobExecutor,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """
        Register a queue and the executor that runs its jobs.

        A bare queue name gets the settings' queue defaults.

        Raises:
            ValueError: If the queue exists or the engine is running.
        """
        if self.dispatcher.is_running:
            raise ValueError("Queues must be added before the engine starts")
        if isinstance(config, str):
            config = QueueConfig.from_settings(config, self.settings)
        if config.name in self._configs:
            raise ValueError(f"Queue {config.name!r} is already registered")

        limiter = None
        if config.rate_limit is not None:
            limiter = SlidingWindowRateLimiter(
                config.rate_limit.max_dispatches,
                config.rate_limit.window_seconds,
                self.clock,
            )

        self._configs[config.name] = config
        self._runtimes[config.name] = QueueRuntime(
            config=config,
            executor=executor,
            retry_policy=retry_policy or RetryPolicy.from_config(config, self._rng),
            rate_limiter=limiter,
        )
        logger.info(
            "Queue registered",
            extra={"queue_name": config.name, "executor": repr(executor)},
        )

    def add_webhook_queue(
        self,
        config: QueueConfig | str,
        secret: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> WebhookDeliveryExecutor:
        """
        Register a queue whose jobs are webhook deliveries.

        The executor's HTTP client is closed when the engine stops.
        """
        executor = WebhookDeliveryExecutor(
            self.attempt_store,
            clock=self.clock,
            secret=secret,
            client=client,
            metrics=self.metrics,
            settings=self.settings,
        )
        self.add_queue(config, executor)
        self._webhook_executors.append(executor)
        return executor

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any] | None = None,
        delay: float | timedelta | None = None,
        max_attempts: int | None = None,
        recurrence: Recurrence | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Add a job to a queue.

        Args:
            queue_name: Registered queue name.
            payload: JSON-serializable job payload.
            delay: Seconds (or timedelta) before the first run.
            max_attempts: Attempt limit. The queue default if omitted.
            recurrence: Re-run rule applied after each success. Without a
                delay the first run is the rule's next occurrence.

        Returns:
            The new job's id.

        Raises:
            InvalidJob: For unknown queues, invalid options or a payload the
                queue's executor rejects.
        """
        runtime = self._runtimes.get(queue_name)
        if runtime is None:
            raise InvalidJob(f"Unknown queue: {queue_name!r}")

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidJob("Payload must be a JSON object")

        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        if delay is not None and delay < 0:
            raise InvalidJob(f"Delay must not be negative, got {delay}")

        if max_attempts is not None and max_attempts < 1:
            raise InvalidJob(f"max_attempts must be at least 1, got {max_attempts}")

        if isinstance(recurrence, dict):
            try:
                recurrence = Recurrence.model_validate(recurrence)
            except ValidationError as exc:
                raise InvalidJob(f"Invalid recurrence: {exc}") from exc

        validate_payload(runtime.executor, payload)

        now = self.clock.now()
        if delay is not None:
            next_run_at = now + timedelta(seconds=delay)
        elif recurrence is not None:
            next_run_at = recurrence.next_after(now)
        else:
            next_run_at = now

        job = Job(
            queue_name=queue_name,
            payload=payload,
            state=JobState.DELAYED if next_run_at > now else JobState.WAITING,
            max_attempts=max_attempts or runtime.config.default_max_attempts,
            next_run_at=next_run_at,
            recurrence=recurrence,
            created_at=now,
            updated_at=now,
        )

        await self.store.create(job)
        self.scheduler.schedule(job)

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.id),
                "queue_name": queue_name,
                "state": job.state.value,
                "next_run_at": next_run_at.isoformat(),
            },
        )
        self.metrics.record_job_enqueued(queue_name)
        await self.events.publish(JobEvent.job_enqueued(job, now))
        self.dispatcher.notify(queue_name)
        return job.id

    async def get_job(self, job_id: UUID) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFound: If no such job exists.
        """
        return await self.store.get(job_id)

    async def list_attempts(self, job_id: UUID) -> Sequence[DeliveryAttempt]:
        """Webhook delivery attempts of a job, oldest first."""
        await self.store.get(job_id)
        return await self.attempt_store.list_for_job(job_id)

    async def retry_job(self, job_id: UUID) -> Job:
        """
        Manually re-enqueue a failed job with a fresh attempt budget.

        Raises:
            JobNotFound: If no such job exists.
            Conflict: If the job is not failed.
        """
        now = self.clock.now()

        def reset(record: Job) -> None:
            record.attempts_made = 0
            record.next_run_at = now
            record.failed_at = None
            record.started_at = None

        job = await self.store.transition(job_id, JobState.FAILED, JobState.WAITING, reset)
        self.scheduler.schedule(job)

        logger.info("Job manually retried", extra={"job_id": str(job_id)})
        await self.events.publish(JobEvent.job_retried(job, now))
        self.dispatcher.notify(job.queue_name)
        return job

    async def stats(self, queue_name: str) -> QueueStats:
        return await self._stats.stats(queue_name)

    async def health(self) -> HealthReport:
        return await self._stats.health()

    async def recover(self) -> int:
        """
        Reclaim stale jobs and rebuild the ready queues from the store.

        Returns:
            Number of stale jobs reclaimed.
        """
        reclaimed = await self.reaper.reclaim_stale()
        for name in self._runtimes:
            await self.scheduler.load(name)
        return reclaimed

    async def purge_expired(self) -> int:
        return await self.reaper.purge_expired()

    async def start(self) -> None:
        """Recover, then start dispatching and reaping in the background."""
        await self.recover()
        await self.dispatcher.start()
        self.reaper.start()
        logger.info("Engine started", extra={"queues": sorted(self._configs)})

    async def stop(self, drain_timeout: float | None = None) -> int:
        """
        Stop claiming new jobs and drain in-flight ones.

        Returns:
            Number of executions abandoned after the drain timeout. Their
            jobs stay active until reclaimed.
        """
        await self.reaper.stop()
        abandoned = await self.dispatcher.stop(drain_timeout)
        for executor in self._webhook_executors:
            await executor.aclose()
        logger.info("Engine stopped", extra={"abandoned": abandoned})
        return abandoned

    async def run_until_idle(self) -> None:
        """Run every due job to a settled state without background loops."""
        await self.dispatcher.run_until_idle()
