"""
Dispatcher: claims ready jobs and runs them.

One loop per queue pulls due jobs from the scheduler while the queue is
below its concurrency limit and rate limit, claims each with a
compare-and-swap transition, and runs the executor in its own task. The
attempt outcome is fed to the retry policy.
"""

import asyncio
import logging
import os
import socket
from collections import defaultdict
from dataclasses import dataclass
from uuid import UUID, uuid4

from jobqueue.clock import Clock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB, JobState
from jobqueue.errors import Conflict, JobNotFound
from jobqueue.events import EventBus
from jobqueue.observability.logging import job_log_context
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import job_span
from jobqueue.scheduler.scheduler import Scheduler
from jobqueue.store.base import JobMutator, JobStore
from jobqueue.types.events import JobEvent
from jobqueue.types.job import Job, JobContext, JobResult
from jobqueue.types.queue import QueueConfig
from jobqueue.worker.handlers import JobExecutor, execute_job
from jobqueue.worker.rate_limit import SlidingWindowRateLimiter
from jobqueue.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class QueueRuntime:
    """Everything the dispatcher needs to run one queue."""

    config: QueueConfig
    executor: JobExecutor
    retry_policy: RetryPolicy
    rate_limiter: SlidingWindowRateLimiter | None = None

    @property
    def name(self) -> str:
        return self.config.name


def _owned_by(owner: str | None, then: JobMutator | None = None) -> JobMutator:
    """Mutator guard: abort the transition if another claim owns the job."""

    def mutate(record: Job) -> None:
        if record.lease_owner != owner:
            raise Conflict(f"Job {record.id} is owned by {record.lease_owner}")
        if then is not None:
            then(record)

    return mutate


class Dispatcher:
    """
    Runs the queues of one engine.

    Features:
    - Compare-and-swap claims, so racing dispatchers never double-run a job
    - Per-queue concurrency and rolling-window rate limits
    - Heartbeats on in-flight jobs for stale-ownership detection
    - Graceful stop with a drain timeout
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        queues: dict[str, QueueRuntime],
        clock: Clock,
        event_bus: EventBus,
        metrics: MetricsCollector,
        settings: Settings | None = None,
        dispatcher_id: str | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: The job store.
            scheduler: The scheduler holding the ready queues.
            queues: Queue runtimes by queue name.
            clock: Time source.
            event_bus: Bus receiving transition events.
            metrics: Metrics collector.
            settings: Timing settings.
            dispatcher_id: Identifier used in claim tokens. Defaults to
                hostname + PID.
        """
        settings = settings or get_settings()

        self.dispatcher_id = (
            dispatcher_id
            or settings.dispatcher_id
            or f"{socket.gethostname()}-{os.getpid()}"
        )
        self.min_tick = settings.min_tick_seconds
        self.max_poll_interval = settings.max_poll_interval_seconds
        self.heartbeat_interval = settings.heartbeat_interval_seconds
        self.resync_interval = settings.resync_interval_seconds
        self.default_drain_timeout = settings.drain_timeout_seconds

        self._store = store
        self._scheduler = scheduler
        self._queues = queues
        self._clock = clock
        self._event_bus = event_bus
        self._metrics = metrics

        self._running = False
        self._stopping = False
        self._loop_tasks: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._in_flight: dict[UUID, asyncio.Task] = {}
        self._leases: dict[UUID, str] = {}
        self._active: defaultdict[str, int] = defaultdict(int)
        self._wakeups: dict[str, asyncio.Event] = {}
        self._rate_wait: dict[str, float] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _wakeup(self, queue_name: str) -> asyncio.Event:
        event = self._wakeups.get(queue_name)
        if event is None:
            event = self._wakeups[queue_name] = asyncio.Event()
        return event

    def notify(self, queue_name: str) -> None:
        """Wake the queue's loop early (new job or freed capacity)."""
        if queue_name in self._queues:
            self._wakeup(queue_name).set()

    async def start(self) -> None:
        """Load pending jobs and start one dispatch loop per queue."""
        if self._running:
            return

        logger.info(
            "Dispatcher starting",
            extra={
                "dispatcher_id": self.dispatcher_id,
                "queues": sorted(self._queues),
            },
        )

        self._running = True
        self._stopping = False

        for name in self._queues:
            await self._scheduler.load(name)
            self._loop_tasks.append(
                asyncio.create_task(self._queue_loop(name), name=f"dispatch:{name}")
            )

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self, drain_timeout: float | None = None) -> int:
        """
        Stop claiming and drain in-flight executions.

        Executions still running after `drain_timeout` are cancelled and
        their jobs stay active, to be reclaimed as stale on a later start.

        Returns:
            Number of executions abandoned.
        """
        if drain_timeout is None:
            drain_timeout = self.default_drain_timeout

        logger.info(
            "Dispatcher stopping",
            extra={"dispatcher_id": self.dispatcher_id, "in_flight": self.in_flight},
        )

        self._stopping = True
        self._running = False

        for task in self._loop_tasks:
            task.cancel()
        await asyncio.gather(*self._loop_tasks, return_exceptions=True)
        self._loop_tasks = []

        abandoned: set[asyncio.Task] = set()
        pending = list(self._in_flight.values())
        if pending:
            _, abandoned = await asyncio.wait(pending, timeout=drain_timeout)
            for task in abandoned:
                task.cancel()
            if abandoned:
                await asyncio.gather(*abandoned, return_exceptions=True)
                logger.warning(
                    "Abandoned executions after drain timeout",
                    extra={
                        "dispatcher_id": self.dispatcher_id,
                        "count": len(abandoned),
                    },
                )

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        logger.info("Dispatcher stopped", extra={"dispatcher_id": self.dispatcher_id})
        return len(abandoned)

    async def run_until_idle(self) -> None:
        """
        Dispatch until nothing is due and nothing is in flight.

        Drives the engine without background loops; jobs due in the future
        are left for a later call.
        """
        while True:
            launched = 0
            for name in self._queues:
                launched += await self.dispatch_ready(name)

            if self._in_flight:
                await asyncio.wait(
                    list(self._in_flight.values()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue

            if launched == 0:
                return

    async def dispatch_ready(self, queue_name: str) -> int:
        """
        Claim and launch due jobs of one queue until a limit is reached.

        Returns:
            Number of executions launched.
        """
        if self._stopping:
            return 0

        runtime = self._queues[queue_name]
        limiter = runtime.rate_limiter
        launched = 0
        self._rate_wait.pop(queue_name, None)

        while not self._stopping:
            if self._active[queue_name] >= runtime.config.concurrency:
                break

            if limiter is not None:
                allowed, wait_time = limiter.check(queue_name)
                if not allowed:
                    # Deferred, not rejected: the job stays waiting
                    self._rate_wait[queue_name] = wait_time
                    break

            job = await self._scheduler.next_ready(queue_name, self._clock.now())
            if job is None:
                if limiter is not None:
                    limiter.refund(queue_name)
                break

            claimed = await self._claim(job)
            if claimed is None:
                if limiter is not None:
                    limiter.refund(queue_name)
                continue

            self._launch(runtime, claimed)
            launched += 1

        return launched

    async def _claim(self, job: Job) -> Job | None:
        """Move a waiting job to active under a fresh claim token."""
        if not job.is_retryable:
            # Only reachable through external edits; keep the invariant
            try:
                failed = await self._store.transition(
                    job.id,
                    JobState.WAITING,
                    JobState.FAILED,
                    lambda record: setattr(record, "failed_at", self._clock.now()),
                )
            except (Conflict, JobNotFound):
                return None
            await self._event_bus.publish(JobEvent.job_failed(failed, self._clock.now()))
            return None

        token = f"{self.dispatcher_id}:{uuid4().hex[:12]}"
        now = self._clock.now()

        def mutate(record: Job) -> None:
            record.attempts_made += 1
            record.lease_owner = token
            record.started_at = now
            record.last_heartbeat_at = now

        try:
            claimed = await self._store.transition(
                job.id, JobState.WAITING, JobState.ACTIVE, mutate
            )
        except (Conflict, JobNotFound):
            # Lost the race to another dispatcher
            logger.debug(
                "Claim lost",
                extra={"job_id": str(job.id), "dispatcher_id": self.dispatcher_id},
            )
            return None

        self._metrics.record_job_claimed(self.dispatcher_id)
        await self._event_bus.publish(JobEvent.job_active(claimed, now))
        return claimed

    def _launch(self, runtime: QueueRuntime, job: Job) -> None:
        queue_name = runtime.name
        task = asyncio.create_task(
            self._execute_job(runtime, job), name=f"job:{job.id}"
        )
        self._in_flight[job.id] = task
        self._leases[job.id] = job.lease_owner or ""
        self._active[queue_name] += 1

        def done(_: asyncio.Task) -> None:
            self._in_flight.pop(job.id, None)
            self._leases.pop(job.id, None)
            self._active[queue_name] -= 1
            self.notify(queue_name)

        task.add_done_callback(done)

    async def _execute_job(self, runtime: QueueRuntime, job: Job) -> None:
        with job_log_context(str(job.id), job.queue_name, job.attempts_made):
            await self._run_job(runtime, job)

    async def _run_job(self, runtime: QueueRuntime, job: Job) -> None:
        """
        Execute a single claimed job.

        Handles the full lifecycle:
        1. Run the executor
        2. Mark completed (or reschedule a recurring job) on success
        3. Retry with backoff or fail terminally on failure

        Cancellation (drain timeout) leaves the job active.
        """
        start = self._clock.monotonic()
        context = JobContext.from_job(job)

        logger.info("Executing job", extra={"dispatcher_id": self.dispatcher_id})

        with job_span(SPAN_EXECUTE_JOB, job.id, job.queue_name, job.attempts_made):
            result = await execute_job(runtime.executor, context)

        duration = self._clock.monotonic() - start

        try:
            if result.success:
                outcome = await self._handle_success(runtime, job, result)
            else:
                outcome = await self._handle_failure(runtime, job, result)
        except (Conflict, JobNotFound):
            logger.warning(
                "Job ownership lost before the result was recorded",
                extra={"job_id": str(job.id), "success": result.success},
            )
            outcome = "lost"
        except Exception as e:
            logger.exception(
                "Failed to record job result",
                extra={"job_id": str(job.id), "error": str(e)},
            )
            outcome = "error"

        self._metrics.record_job_finished(job.queue_name, outcome, duration)

    async def _handle_success(
        self,
        runtime: QueueRuntime,
        job: Job,
        result: JobResult,
    ) -> str:
        if job.recurrence is not None:
            updated = await self._scheduler.complete_recurring(job)
            logger.info(
                "Recurring job completed, next run scheduled",
                extra={
                    "job_id": str(job.id),
                    "next_run_at": updated.next_run_at.isoformat(),
                },
            )
            await self._event_bus.publish(
                JobEvent.job_rescheduled(updated, self._clock.now())
            )
            return "completed"

        now = self._clock.now()

        def mark_completed(record: Job) -> None:
            record.completed_at = now
            record.lease_owner = None
            record.last_heartbeat_at = None

        updated = await self._store.transition(
            job.id,
            JobState.ACTIVE,
            JobState.COMPLETED,
            _owned_by(job.lease_owner, mark_completed),
        )
        logger.info("Job completed successfully", extra={"job_id": str(job.id)})
        await self._event_bus.publish(JobEvent.job_completed(updated, now, result.output))
        return "completed"

    async def _handle_failure(
        self,
        runtime: QueueRuntime,
        job: Job,
        result: JobResult,
    ) -> str:
        error = result.error or "Unknown error"

        if runtime.retry_policy.should_retry(job, result):
            delay = runtime.retry_policy.next_delay(job)
            updated = await self._scheduler.reschedule(job, delay, error)
            logger.warning(
                "Job failed, retry scheduled",
                extra={
                    "job_id": str(job.id),
                    "attempt": job.attempts_made,
                    "delay_seconds": round(delay, 3),
                    "error": error,
                },
            )
            await self._event_bus.publish(
                JobEvent.job_retry_scheduled(updated, self._clock.now(), delay)
            )
            return "retry"

        now = self._clock.now()

        def mark_failed(record: Job) -> None:
            record.failed_at = now
            record.last_error = error
            record.lease_owner = None
            record.last_heartbeat_at = None

        updated = await self._store.transition(
            job.id,
            JobState.ACTIVE,
            JobState.FAILED,
            _owned_by(job.lease_owner, mark_failed),
        )
        logger.warning(
            f"Job failed after {job.attempts_made} attempts",
            extra={"job_id": str(job.id), "error": error},
        )
        await self._event_bus.publish(JobEvent.job_failed(updated, now))
        return "failed"

    async def _queue_loop(self, queue_name: str) -> None:
        """Dispatch loop for one queue."""
        wakeup = self._wakeup(queue_name)
        last_sync = self._clock.monotonic()

        while self._running:
            wakeup.clear()
            try:
                if self._clock.monotonic() - last_sync >= self.resync_interval:
                    await self._scheduler.load(queue_name)
                    last_sync = self._clock.monotonic()

                await self.dispatch_ready(queue_name)

            except Exception as e:
                logger.exception(
                    f"Error in dispatch loop: {e}",
                    extra={"queue_name": queue_name},
                )

            try:
                await asyncio.wait_for(wakeup.wait(), self._sleep_for(queue_name))
            except asyncio.TimeoutError:
                pass

    def _sleep_for(self, queue_name: str) -> float:
        """Seconds until the queue could have work, within poll bounds."""
        timeout = self.max_poll_interval

        rate_wait = self._rate_wait.get(queue_name)
        if rate_wait is not None:
            timeout = min(timeout, rate_wait)
        elif self._active[queue_name] < self._queues[queue_name].config.concurrency:
            due = self._scheduler.next_due_at(queue_name)
            if due is not None:
                timeout = min(timeout, (due - self._clock.now()).total_seconds())

        return max(timeout, self.min_tick)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically refresh heartbeats of in-flight jobs.

        This prevents the reaper from reclaiming jobs that are still being
        executed. Runs until cancelled, so draining jobs keep their
        heartbeats.
        """
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for job_id, owner in list(self._leases.items()):
                    alive = await self._store.touch(job_id, owner, self._clock.now())
                    if not alive:
                        logger.warning(
                            "Heartbeat rejected, job no longer owned",
                            extra={"job_id": str(job_id)},
                        )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")
