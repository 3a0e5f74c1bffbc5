"""
Integration tests for the queue engine.

Most tests drive the engine with run_until_idle and a manual clock, so
delays, backoff and recurrence are deterministic.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest
from pydantic import BaseModel

from jobqueue.clock import ManualClock
from jobqueue.constants import (
    EVENT_JOB_ACTIVE,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_ENQUEUED,
    EVENT_JOB_FAILED,
    EVENT_JOB_PROMOTED,
    EVENT_JOB_RESCHEDULED,
    EVENT_JOB_RETRIED,
    EVENT_JOB_RETRY_SCHEDULED,
    DeliveryOutcome,
    JobState,
)
from jobqueue.errors import Conflict, InvalidJob, JobNotFound
from jobqueue.types.job import JobContext, JobResult
from jobqueue.types.queue import QueueConfig, RateLimit
from jobqueue.webhooks.signing import verify_signature
from jobqueue.worker.handlers import FunctionExecutor


class TestEnqueue:
    """Tests for enqueue validation and initial state."""

    @pytest.mark.asyncio
    async def test_immediate_job_is_waiting(self, make_engine, succeeding_executor):
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())

        job = await engine.get_job(await engine.enqueue("q", {"n": 1}))

        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.max_attempts == 3

    @pytest.mark.asyncio
    async def test_delayed_job(self, make_engine, succeeding_executor, clock: ManualClock):
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())

        job = await engine.get_job(await engine.enqueue("q", {}, delay=30))

        assert job.state == JobState.DELAYED
        assert job.next_run_at == clock.now() + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_unknown_queue(self, make_engine):
        engine = make_engine()
        with pytest.raises(InvalidJob, match="Unknown queue"):
            await engine.enqueue("nope", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [
            {"max_attempts": 0},
            {"delay": -1},
            {"recurrence": {"cron": "bad"}},
        ],
    )
    async def test_invalid_options(self, make_engine, succeeding_executor, options):
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())

        with pytest.raises(InvalidJob):
            await engine.enqueue("q", {}, **options)

    @pytest.mark.asyncio
    async def test_payload_schema(self, make_engine):
        """Payloads are validated against the executor's model."""

        class Payload(BaseModel):
            user_id: int

        async def handler(context: JobContext) -> JobResult:
            return JobResult.ok()

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), FunctionExecutor(handler, Payload))

        await engine.enqueue("q", {"user_id": 1})
        with pytest.raises(InvalidJob):
            await engine.enqueue("q", {"user_id": "not a number"})

    def test_duplicate_queue(self, make_engine, succeeding_executor):
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())
        with pytest.raises(ValueError):
            engine.add_queue(QueueConfig(name="q"), succeeding_executor())


class TestExecution:
    """Tests for the dispatch lifecycle."""

    @pytest.mark.asyncio
    async def test_success(self, make_engine, succeeding_executor, recorded_events):
        """A job runs once and completes."""
        calls: list[JobContext] = []
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor(calls))
        events = recorded_events(engine.events)

        job_id = await engine.enqueue("q", {"n": 1})
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1
        assert job.completed_at is not None
        assert job.lease_owner is None
        assert [c.attempt for c in calls] == [1]
        assert [e.event_type for e in events] == [
            EVENT_JOB_ENQUEUED,
            EVENT_JOB_ACTIVE,
            EVENT_JOB_COMPLETED,
        ]
        assert events[-1].data == {"output": {"echo": {"n": 1}}}

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_fails(
        self, make_engine, failing_executor, recorded_events, clock: ManualClock
    ):
        """A failing job is retried with doubling delays, then fails."""
        engine = make_engine()
        engine.add_queue(
            QueueConfig(name="q", backoff_base_seconds=1.0, backoff_jitter=0.0),
            failing_executor("smtp down"),
        )
        events = recorded_events(engine.events)
        job_id = await engine.enqueue("q", {}, max_attempts=3)

        await engine.run_until_idle()
        job = await engine.get_job(job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 1
        assert job.next_run_at == clock.now() + timedelta(seconds=1)

        clock.advance(1)
        await engine.run_until_idle()
        job = await engine.get_job(job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 2
        assert job.next_run_at == clock.now() + timedelta(seconds=2)

        clock.advance(2)
        await engine.run_until_idle()
        job = await engine.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.last_error == "smtp down"
        assert job.failed_at == clock.now()

        # Nothing else happens, however long we wait
        clock.advance(3600)
        await engine.run_until_idle()
        assert (await engine.get_job(job_id)).attempts_made == 3

        assert [e.event_type for e in events] == [
            EVENT_JOB_ENQUEUED,
            EVENT_JOB_ACTIVE,
            EVENT_JOB_RETRY_SCHEDULED,
            EVENT_JOB_PROMOTED,
            EVENT_JOB_ACTIVE,
            EVENT_JOB_RETRY_SCHEDULED,
            EVENT_JOB_PROMOTED,
            EVENT_JOB_ACTIVE,
            EVENT_JOB_FAILED,
        ]

    @pytest.mark.asyncio
    async def test_non_retryable_failure(self, make_engine):
        """A non-retryable failure fails on the first attempt."""

        async def handler(context: JobContext) -> JobResult:
            return JobResult.fail("bad input", retryable=False)

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), FunctionExecutor(handler))
        job_id = await engine.enqueue("q", {}, max_attempts=5)

        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, make_engine, succeeding_executor, clock):
        """A delayed job does not run before its time."""
        calls: list[JobContext] = []
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor(calls))
        job_id = await engine.enqueue("q", {}, delay=10)

        await engine.run_until_idle()
        assert calls == []

        clock.advance(10)
        await engine.run_until_idle()
        assert len(calls) == 1
        assert (await engine.get_job(job_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_due_order(self, make_engine, succeeding_executor, clock):
        """Jobs run in due order with ties in enqueue order."""
        calls: list[JobContext] = []
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q", concurrency=1), succeeding_executor(calls))
        await engine.enqueue("q", {"n": "late"}, delay=5)
        await engine.enqueue("q", {"n": "a"})
        await engine.enqueue("q", {"n": "b"})
        await engine.enqueue("q", {"n": "early"}, delay=2)

        clock.advance(5)
        await engine.run_until_idle()

        assert [c.payload["n"] for c in calls] == ["a", "b", "early", "late"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, make_engine):
        """Never more than `concurrency` executions at once."""
        running = 0
        peak = 0

        async def handler(context: JobContext) -> JobResult:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return JobResult.ok()

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q", concurrency=2), FunctionExecutor(handler))
        ids = [await engine.enqueue("q", {"n": i}) for i in range(6)]

        await engine.run_until_idle()

        assert peak == 2
        for job_id in ids:
            assert (await engine.get_job(job_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_serial_queue_never_overlaps(self, make_engine):
        """With concurrency 1, executions run back to back."""
        windows: list[tuple[float, float]] = []
        loop = asyncio.get_running_loop()

        async def handler(context: JobContext) -> JobResult:
            started = loop.time()
            await asyncio.sleep(0.02)
            windows.append((started, loop.time()))
            return JobResult.ok()

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q", concurrency=1), FunctionExecutor(handler))
        for i in range(5):
            await engine.enqueue("q", {"n": i})

        started = loop.time()
        await engine.run_until_idle()
        elapsed = loop.time() - started

        assert len(windows) == 5
        windows.sort()
        for (_, previous_end), (next_start, _) in zip(windows, windows[1:]):
            assert next_start >= previous_end
        assert elapsed >= sum(end - start for start, end in windows)

    @pytest.mark.asyncio
    async def test_completion_handler_can_enqueue(self, make_engine, succeeding_executor):
        """A subscriber may chain a follow-up job from a completion event."""
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())
        engine.add_queue(QueueConfig(name="followup"), succeeding_executor())
        followups = []

        async def chain(event) -> None:
            if event.queue_name == "q":
                followups.append(await engine.enqueue("followup", {"after": str(event.job_id)}))

        engine.events.subscribe(chain, event_types=[EVENT_JOB_COMPLETED])
        await engine.enqueue("q", {})

        await asyncio.wait_for(engine.run_until_idle(), 2)

        [followup_id] = followups
        assert (await engine.get_job(followup_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_rate_limit_defers(self, make_engine, succeeding_executor, clock):
        """Rate-limited jobs stay waiting until the window rolls."""
        engine = make_engine()
        engine.add_queue(
            QueueConfig(
                name="q", rate_limit=RateLimit(max_dispatches=2, window_seconds=60)
            ),
            succeeding_executor(),
        )
        for i in range(5):
            await engine.enqueue("q", {"n": i})

        await engine.run_until_idle()
        stats = await engine.stats("q")
        assert (stats.completed, stats.waiting) == (2, 3)

        clock.advance(60)
        await engine.run_until_idle()
        stats = await engine.stats("q")
        assert (stats.completed, stats.waiting) == (4, 1)

    @pytest.mark.asyncio
    async def test_manual_retry(self, make_engine, failing_executor, recorded_events):
        """A failed job can be re-enqueued with a fresh attempt budget."""
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), failing_executor())
        job_id = await engine.enqueue("q", {}, max_attempts=1)
        await engine.run_until_idle()
        events = recorded_events(engine.events)

        job = await engine.retry_job(job_id)

        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert events[0].event_type == EVENT_JOB_RETRIED

        await engine.run_until_idle()
        job = await engine.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_retry_requires_failed_job(self, make_engine, succeeding_executor):
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())
        job_id = await engine.enqueue("q", {})

        with pytest.raises(Conflict):
            await engine.retry_job(job_id)


class TestRecurring:
    """Tests for recurring jobs."""

    @pytest.mark.asyncio
    async def test_interval_job(self, make_engine, succeeding_executor, clock, recorded_events):
        """An interval job runs once per interval and stays pending."""
        calls: list[JobContext] = []
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor(calls))
        events = recorded_events(engine.events)
        job_id = await engine.enqueue("q", {}, recurrence={"every_seconds": 60})

        job = await engine.get_job(job_id)
        assert job.state == JobState.DELAYED
        assert job.next_run_at == clock.now() + timedelta(seconds=60)

        await engine.run_until_idle()
        assert calls == []

        clock.advance(60)
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert len(calls) == 1
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 0
        assert job.completed_at == clock.now()
        assert job.next_run_at == clock.now() + timedelta(seconds=60)
        assert events[-1].event_type == EVENT_JOB_RESCHEDULED

    @pytest.mark.asyncio
    async def test_missed_occurrences_collapse(self, make_engine, succeeding_executor, clock):
        """After downtime a recurring job catches up with a single run."""
        calls: list[JobContext] = []
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor(calls))
        job_id = await engine.enqueue("q", {}, recurrence={"every_seconds": 60})

        clock.advance(600)
        await engine.run_until_idle()

        assert len(calls) == 1
        job = await engine.get_job(job_id)
        assert job.next_run_at == clock.now() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_cron_job(self, make_engine, succeeding_executor, clock):
        """Cron jobs first run at the next matching minute."""
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())
        clock.advance(90)  # 00:01:30

        job_id = await engine.enqueue("q", {}, recurrence={"cron": "*/15 * * * *"})

        job = await engine.get_job(job_id)
        assert job.next_run_at == job.created_at.replace(minute=15, second=0)

    @pytest.mark.asyncio
    async def test_failing_recurring_job_fails(self, make_engine, failing_executor, clock):
        """Recurring jobs still fail terminally when attempts run out."""
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q", backoff_jitter=0.0), failing_executor())
        job_id = await engine.enqueue(
            "q", {}, max_attempts=2, recurrence={"every_seconds": 60}
        )

        clock.advance(60)
        await engine.run_until_idle()
        clock.advance(1)
        await engine.run_until_idle()

        assert (await engine.get_job(job_id)).state == JobState.FAILED


class TestWebhooks:
    """End-to-end webhook delivery."""

    @pytest.mark.asyncio
    async def test_retry_keeps_delivery_id(self, make_engine, mock_http, clock):
        """A retried delivery reuses the delivery id and is re-signed."""
        client, requests = mock_http(httpx.Response(500), httpx.Response(200, text="ok"))
        engine = make_engine()
        engine.add_webhook_queue(
            QueueConfig(name="hooks", backoff_jitter=0.0), secret="s3cret", client=client
        )
        job_id = await engine.enqueue(
            "hooks",
            {"url": "https://receiver.test/h", "event": "invoice.paid", "data": {"id": 3}},
        )

        await engine.run_until_idle()
        clock.advance(1)
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2

        assert len(requests) == 2
        assert {r.headers["X-Webhook-Delivery"] for r in requests} == {str(job_id)}
        for request in requests:
            verify_signature(
                "s3cret",
                request.headers["X-Webhook-Signature"],
                request.content,
                300,
                clock.now().timestamp(),
            )

        attempts = await engine.list_attempts(job_id)
        assert [(a.attempt_number, a.outcome, a.status_code) for a in attempts] == [
            (1, DeliveryOutcome.FAILURE, 500),
            (2, DeliveryOutcome.SUCCESS, 200),
        ]

    @pytest.mark.asyncio
    async def test_always_failing_endpoint_exhausts_attempts(
        self, make_engine, mock_http, clock
    ):
        """Three failed deliveries leave three failure rows and a failed job."""
        client, requests = mock_http(httpx.Response(500, text="down"))
        engine = make_engine()
        engine.add_webhook_queue(
            QueueConfig(name="hooks", backoff_jitter=0.0), client=client
        )
        job_id = await engine.enqueue(
            "hooks",
            {"url": "https://receiver.test/h", "event": "e", "data": {}},
            max_attempts=3,
        )

        await engine.run_until_idle()
        clock.advance(1)
        await engine.run_until_idle()
        clock.advance(2)
        await engine.run_until_idle()
        clock.advance(3600)
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.last_error == "HTTP 500"
        assert len(requests) == 3

        attempts = await engine.list_attempts(job_id)
        assert [(a.attempt_number, a.outcome, a.status_code) for a in attempts] == [
            (1, DeliveryOutcome.FAILURE, 500),
            (2, DeliveryOutcome.FAILURE, 500),
            (3, DeliveryOutcome.FAILURE, 500),
        ]

    @pytest.mark.asyncio
    async def test_endpoint_recovers_on_third_attempt(self, make_engine, mock_http, clock):
        client, _ = mock_http(
            httpx.Response(500), httpx.Response(500), httpx.Response(200, text="ok")
        )
        engine = make_engine()
        engine.add_webhook_queue(
            QueueConfig(name="hooks", backoff_jitter=0.0), client=client
        )
        job_id = await engine.enqueue(
            "hooks",
            {"url": "https://receiver.test/h", "event": "e", "data": {}},
            max_attempts=3,
        )

        await engine.run_until_idle()
        clock.advance(1)
        await engine.run_until_idle()
        clock.advance(2)
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 3

        attempts = await engine.list_attempts(job_id)
        assert [a.outcome for a in attempts] == [
            DeliveryOutcome.FAILURE,
            DeliveryOutcome.FAILURE,
            DeliveryOutcome.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_invalid_webhook_payload(self, make_engine, mock_http):
        client, _ = mock_http()
        engine = make_engine()
        engine.add_webhook_queue(QueueConfig(name="hooks"), client=client)

        with pytest.raises(InvalidJob):
            await engine.enqueue("hooks", {"event": "missing.url"})


class TestLifecycle:
    """Tests for background dispatch, shutdown and recovery."""

    @pytest.mark.asyncio
    async def test_background_dispatch(self, make_engine, succeeding_executor):
        """A started engine picks up newly enqueued jobs."""
        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), succeeding_executor())
        await engine.start()
        try:
            job_id = await engine.enqueue("q", {})
            for _ in range(100):
                if (await engine.get_job(job_id)).state == JobState.COMPLETED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await engine.stop()

        assert (await engine.get_job(job_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight(self, make_engine):
        """Stop waits for running executions within the drain timeout."""
        started = asyncio.Event()

        async def handler(context: JobContext) -> JobResult:
            started.set()
            await asyncio.sleep(0.05)
            return JobResult.ok()

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), FunctionExecutor(handler))
        await engine.start()
        job_id = await engine.enqueue("q", {})
        await asyncio.wait_for(started.wait(), timeout=2)

        abandoned = await engine.stop(drain_timeout=2)

        assert abandoned == 0
        assert (await engine.get_job(job_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_abandoned_job_is_reclaimed(
        self, make_engine, succeeding_executor, clock, test_settings, recorded_events
    ):
        """A job cut off by shutdown runs again after stale reclaim."""
        started = asyncio.Event()

        async def hang(context: JobContext) -> JobResult:
            started.set()
            await asyncio.Event().wait()
            return JobResult.ok()

        first = make_engine()
        first.add_queue(QueueConfig(name="q"), FunctionExecutor(hang))
        await first.start()
        job_id = await first.enqueue("q", {})
        await asyncio.wait_for(started.wait(), timeout=2)

        assert await first.stop(drain_timeout=0.01) == 1
        job = await first.get_job(job_id)
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1

        # Not stale yet
        second = make_engine()
        second.add_queue(QueueConfig(name="q"), succeeding_executor())
        assert await second.recover() == 0

        clock.advance(test_settings.stale_after_seconds + 1)
        events = recorded_events(second.events)
        assert await second.recover() == 1
        job = await second.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 1
        assert job.lease_owner is None
        assert "stopped heartbeating" in job.last_error

        await second.run_until_idle()
        job = await second.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert events[0].event_type == "job.reclaimed"

    @pytest.mark.asyncio
    async def test_stale_job_without_attempts_fails(self, make_engine, clock, test_settings):
        """A stale job on its last attempt fails instead of rerunning."""
        started = asyncio.Event()

        async def hang(context: JobContext) -> JobResult:
            started.set()
            await asyncio.Event().wait()
            return JobResult.ok()

        engine = make_engine()
        engine.add_queue(QueueConfig(name="q"), FunctionExecutor(hang))
        await engine.start()
        job_id = await engine.enqueue("q", {}, max_attempts=1)
        await asyncio.wait_for(started.wait(), timeout=2)
        await engine.stop(drain_timeout=0.01)

        clock.advance(test_settings.stale_after_seconds + 1)
        await engine.recover()

        job = await engine.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 1


class TestRetention:
    """Tests for purging finished jobs."""

    @pytest.mark.asyncio
    async def test_max_count_keeps_newest(self, make_engine, succeeding_executor, clock):
        """Only the newest max_count finished jobs are kept."""
        engine = make_engine()
        engine.add_queue(
            QueueConfig(name="q", retention={"max_count": 2, "max_age_seconds": None}),
            succeeding_executor(),
        )
        ids = []
        for i in range(4):
            ids.append(await engine.enqueue("q", {"n": i}))
            await engine.run_until_idle()
            clock.advance(1)

        assert await engine.purge_expired() == 2

        for old in ids[:2]:
            with pytest.raises(JobNotFound):
                await engine.get_job(old)
        for kept in ids[2:]:
            assert (await engine.get_job(kept)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_jobs_kept_until_expiry(self, make_engine, failing_executor, clock):
        """Failed jobs stay queryable until they pass max_age."""
        engine = make_engine()
        engine.add_queue(
            QueueConfig(name="q", retention={"max_count": None, "max_age_seconds": 3600}),
            failing_executor("nope"),
        )
        job_id = await engine.enqueue("q", {}, max_attempts=1)
        await engine.run_until_idle()

        clock.advance(1800)
        assert await engine.purge_expired() == 0
        assert (await engine.get_job(job_id)).last_error == "nope"

        clock.advance(1801)
        assert await engine.purge_expired() == 1
        with pytest.raises(JobNotFound):
            await engine.get_job(job_id)

    @pytest.mark.asyncio
    async def test_job_retried_during_purge_survives(
        self, make_engine, failing_executor, clock
    ):
        """A job revived between listing and deletion is not purged."""
        engine = make_engine()
        engine.add_queue(
            QueueConfig(name="q", retention={"max_count": None, "max_age_seconds": 60}),
            failing_executor("nope"),
        )
        job_id = await engine.enqueue("q", {}, max_attempts=1)
        await engine.run_until_idle()
        clock.advance(120)

        delete = engine.store.delete

        async def retry_then_delete(target, expected_states=None):
            await engine.retry_job(target)
            return await delete(target, expected_states)

        engine.store.delete = retry_then_delete

        assert await engine.purge_expired() == 0
        job = await engine.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_purge_removes_delivery_attempts(self, make_engine, mock_http, clock):
        client, _ = mock_http(httpx.Response(200))
        engine = make_engine()
        engine.add_webhook_queue(
            QueueConfig(name="hooks", retention={"max_count": 0, "max_age_seconds": None}),
            client=client,
        )
        job_id = await engine.enqueue(
            "hooks", {"url": "https://receiver.test/h", "event": "e", "data": {}}
        )
        await engine.run_until_idle()
        assert len(await engine.attempt_store.list_for_job(job_id)) == 1

        assert await engine.purge_expired() == 1
        assert await engine.attempt_store.list_for_job(job_id) == []


class TestHealth:
    """Tests for engine-level stats and health."""

    @pytest.mark.asyncio
    async def test_health_reports_backlog(self, make_engine, succeeding_executor):
        engine = make_engine()
        engine.add_queue(
            QueueConfig(name="q", backlog_threshold=1), succeeding_executor()
        )
        await engine.enqueue("q", {})
        assert (await engine.health()).healthy is True

        await engine.enqueue("q", {})
        report = await engine.health()
        assert report.healthy is False
        assert report.queues["q"].waiting == 2


class TestSqlBackend:
    """The same lifecycle against the SQL stores."""

    @pytest.mark.asyncio
    async def test_webhook_retry_on_sqlite(
        self, make_engine, sql_job_store, sql_attempt_store, mock_http, clock
    ):
        client, requests = mock_http(httpx.ReadTimeout("slow"), httpx.Response(200))
        engine = make_engine(store=sql_job_store, attempt_store=sql_attempt_store)
        engine.add_webhook_queue(
            QueueConfig(name="hooks", backoff_jitter=0.0), client=client
        )
        job_id = await engine.enqueue(
            "hooks", {"url": "https://receiver.test/h", "event": "e", "data": [1, 2]}
        )

        await engine.run_until_idle()
        job = await engine.get_job(job_id)
        assert job.state == JobState.DELAYED
        assert "Timed out" in job.last_error

        clock.advance(1)
        await engine.run_until_idle()

        job = await engine.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert requests[1].content == b"[1, 2]"
        attempts = await engine.list_attempts(job_id)
        assert [a.outcome for a in attempts] == [
            DeliveryOutcome.FAILURE,
            DeliveryOutcome.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_recovery_after_restart_on_sqlite(
        self, make_engine, sql_job_store, succeeding_executor, clock
    ):
        """A new engine on the same database picks up pending jobs."""
        first = make_engine(store=sql_job_store)
        first.add_queue(QueueConfig(name="q"), succeeding_executor())
        job_id = await first.enqueue("q", {"n": 1}, delay=5)

        second = make_engine(store=sql_job_store)
        second.add_queue(QueueConfig(name="q"), succeeding_executor())
        await second.recover()
        clock.advance(5)
        await second.run_until_idle()

        assert (await second.get_job(job_id)).state == JobState.COMPLETED
