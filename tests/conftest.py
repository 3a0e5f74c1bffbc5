"""
Pytest configuration and shared fixtures.
"""

import random
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

from jobqueue.clock import ManualClock
from jobqueue.config import Settings
from jobqueue.db import Database, SqlDeliveryAttemptStore, SqlJobStore
from jobqueue.engine import QueueEngine
from jobqueue.events import EventBus
from jobqueue.store import MemoryDeliveryAttemptStore, MemoryJobStore
from jobqueue.types.events import JobEvent
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import FunctionExecutor


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with fast loops and no jitter."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
        log_format="console",
        min_tick_seconds=0.01,
        max_poll_interval_seconds=0.05,
        heartbeat_interval_seconds=0.05,
        resync_interval_seconds=60,
        drain_timeout_seconds=1,
        reaper_interval_seconds=60,
        stale_after_seconds=60,
        backoff_jitter=0.0,
        webhook_secret=None,
    )


@pytest.fixture
def clock() -> ManualClock:
    """A clock that only moves when the test says so."""
    return ManualClock()


@pytest.fixture
def job_store(clock: ManualClock, test_settings: Settings) -> MemoryJobStore:
    return MemoryJobStore(clock, test_settings.max_payload_bytes)


@pytest.fixture
def attempt_store() -> MemoryDeliveryAttemptStore:
    return MemoryDeliveryAttemptStore()


@pytest_asyncio.fixture
async def database(tmp_path: Path, test_settings: Settings) -> AsyncGenerator[Database]:
    """A file-backed SQLite database with the schema created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", test_settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def sql_job_store(database: Database, clock: ManualClock) -> SqlJobStore:
    return SqlJobStore(database, clock)


@pytest.fixture
def sql_attempt_store(database: Database) -> SqlDeliveryAttemptStore:
    return SqlDeliveryAttemptStore(database)


@pytest.fixture
def make_engine(
    job_store: MemoryJobStore,
    attempt_store: MemoryDeliveryAttemptStore,
    clock: ManualClock,
    test_settings: Settings,
) -> Callable[..., QueueEngine]:
    """Factory for engines sharing the test stores and clock."""

    def factory(**overrides: Any) -> QueueEngine:
        options: dict[str, Any] = {
            "attempt_store": attempt_store,
            "clock": clock,
            "settings": test_settings,
            "rng": random.Random(7),
        }
        options.update(overrides)
        store = options.pop("store", job_store)
        return QueueEngine(store, **options)

    return factory


@pytest.fixture
def recorded_events() -> Callable[[EventBus], list[JobEvent]]:
    """Subscribe a recorder to a bus and return the list it fills."""

    def record(bus: EventBus) -> list[JobEvent]:
        events: list[JobEvent] = []
        bus.subscribe(events.append)
        return events

    return record


@pytest.fixture
def succeeding_executor() -> Callable[..., FunctionExecutor]:
    """Factory for executors that record their calls and always succeed."""

    def factory(calls: list[JobContext] | None = None) -> FunctionExecutor:
        async def handler(context: JobContext) -> JobResult:
            if calls is not None:
                calls.append(context)
            return JobResult.ok({"echo": context.payload})

        return FunctionExecutor(handler)

    return factory


@pytest.fixture
def failing_executor() -> Callable[..., FunctionExecutor]:
    """Factory for executors that always fail with a retryable error."""

    def factory(error: str = "boom") -> FunctionExecutor:
        async def handler(context: JobContext) -> JobResult:
            return JobResult.fail(error)

        return FunctionExecutor(handler)

    return factory


@pytest.fixture
def mock_http() -> Callable[..., tuple[httpx.AsyncClient, list[httpx.Request]]]:
    """
    Build an httpx client backed by a scripted MockTransport.

    Each call to the returned factory takes a list of responses (or
    exceptions to raise) served in order; the last one repeats.
    """

    def factory(
        *responses: httpx.Response | Exception,
    ) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
        requests: list[httpx.Request] = []
        script = list(responses) or [httpx.Response(200)]

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            index = min(len(requests), len(script)) - 1
            outcome = script[index]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return client, requests

    return factory
