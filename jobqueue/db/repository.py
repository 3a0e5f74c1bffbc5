"""
SQL store implementations.
Implements the JobStore and DeliveryAttemptStore contracts on SQLAlchemy.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError

from jobqueue.clock import Clock, SystemClock
from jobqueue.config import get_settings
from jobqueue.constants import DeliveryOutcome, JobState
from jobqueue.db.connection import Database
from jobqueue.db.models import DeliveryAttemptRecord, JobRecord
from jobqueue.errors import Conflict, JobNotFound
from jobqueue.scheduler.recurrence import Recurrence
from jobqueue.store.base import (
    DeliveryAttemptStore,
    JobMutator,
    JobStore,
    apply_transition,
    validate_new_job,
)
from jobqueue.types.job import DeliveryAttempt, Job

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id",
    "queue_name",
    "payload",
    "state",
    "attempts_made",
    "max_attempts",
    "last_error",
    "next_run_at",
    "recurrence",
    "lease_owner",
    "last_heartbeat_at",
    "version",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
    "failed_at",
)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; everything is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _job_columns(job: Job) -> dict[str, Any]:
    data = job.model_dump()
    return {name: data[name] for name in _JOB_COLUMNS}


def _to_job(row: JobRecord) -> Job:
    return Job(
        id=row.id,
        queue_name=row.queue_name,
        payload=row.payload or {},
        state=JobState(row.state),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        next_run_at=_aware(row.next_run_at),
        recurrence=Recurrence.from_dict(row.recurrence),
        lease_owner=row.lease_owner,
        last_heartbeat_at=_aware(row.last_heartbeat_at),
        version=row.version,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        failed_at=_aware(row.failed_at),
    )


def _to_attempt(row: DeliveryAttemptRecord) -> DeliveryAttempt:
    return DeliveryAttempt(
        id=row.id,
        job_id=row.job_id,
        attempt_number=row.attempt_number,
        url=row.url,
        status_code=row.status_code,
        duration_ms=row.duration_ms,
        response_body_snippet=row.response_body_snippet,
        outcome=DeliveryOutcome(row.outcome),
        error=row.error,
        created_at=_aware(row.created_at),
        finished_at=_aware(row.finished_at),
    )


class SqlJobStore(JobStore):
    """
    Job store backed by a SQL database.

    Transitions are a conditional UPDATE on (id, state, version): whichever
    writer commits first wins, every other writer sees zero affected rows
    and gets Conflict.
    """

    def __init__(
        self,
        database: Database,
        clock: Clock | None = None,
        max_payload_bytes: int | None = None,
    ):
        """
        Initialize the store.

        Args:
            database: The database to use.
            clock: Time source for updated_at stamps.
            max_payload_bytes: Payload size limit. Defaults to settings.
        """
        self._db = database
        self._clock = clock or SystemClock()
        self._max_payload_bytes = (
            max_payload_bytes or get_settings().max_payload_bytes
        )

    async def create(self, job: Job) -> UUID:
        validate_new_job(job, self._max_payload_bytes)
        try:
            async with self._db.session() as session:
                session.add(JobRecord(**_job_columns(job)))
        except IntegrityError as exc:
            raise Conflict(f"Job {job.id} already exists") from exc

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "queue_name": job.queue_name},
        )
        return job.id

    async def get(self, job_id: UUID) -> Job:
        async with self._db.session() as session:
            row = await session.get(JobRecord, job_id)
            if row is None:
                raise JobNotFound(f"Job {job_id} not found")
            return _to_job(row)

    async def transition(
        self,
        job_id: UUID,
        expected_state: JobState,
        new_state: JobState,
        mutator: JobMutator | None = None,
    ) -> Job:
        async with self._db.session() as session:
            row = await session.get(JobRecord, job_id)
            if row is None:
                raise JobNotFound(f"Job {job_id} not found")

            current = _to_job(row)
            updated = apply_transition(
                current, expected_state, new_state, mutator, self._clock.now()
            )

            before = _job_columns(current)
            changes = {
                name: value
                for name, value in _job_columns(updated).items()
                if value != before[name]
            }

            stmt = (
                update(JobRecord)
                .where(
                    and_(
                        JobRecord.id == job_id,
                        JobRecord.state == expected_state,
                        JobRecord.version == current.version,
                    )
                )
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

            if result.rowcount != 1:
                raise Conflict(
                    f"Job {job_id} changed concurrently, transition "
                    f"{expected_state} -> {new_state} lost"
                )

        return updated

    async def list_by_state(self, queue_name: str, state: JobState) -> Sequence[Job]:
        stmt = (
            select(JobRecord)
            .where(
                and_(
                    JobRecord.queue_name == queue_name,
                    JobRecord.state == state,
                )
            )
            .order_by(JobRecord.next_run_at.asc(), JobRecord.created_at.asc())
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [_to_job(row) for row in result.scalars().all()]

    async def count_by_state(self, queue_name: str) -> dict[JobState, int]:
        stmt = (
            select(JobRecord.state, func.count())
            .where(JobRecord.queue_name == queue_name)
            .group_by(JobRecord.state)
        )
        counts = {state: 0 for state in JobState}
        async with self._db.session() as session:
            result = await session.execute(stmt)
            for state, count in result.all():
                counts[JobState(state)] = count
        return counts

    async def queue_names(self) -> list[str]:
        stmt = select(distinct(JobRecord.queue_name)).order_by(JobRecord.queue_name)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def touch(self, job_id: UUID, owner: str, at: datetime) -> bool:
        stmt = (
            update(JobRecord)
            .where(
                and_(
                    JobRecord.id == job_id,
                    JobRecord.state == JobState.ACTIVE,
                    JobRecord.lease_owner == owner,
                )
            )
            .values(last_heartbeat_at=at)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def delete(
        self,
        job_id: UUID,
        expected_states: Iterable[JobState] | None = None,
    ) -> bool:
        stmt = delete(JobRecord).where(JobRecord.id == job_id)
        if expected_states is not None:
            stmt = stmt.where(JobRecord.state.in_(list(expected_states)))
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0


class SqlDeliveryAttemptStore(DeliveryAttemptStore):
    """Delivery attempt audit trail backed by a SQL database."""

    def __init__(self, database: Database):
        self._db = database

    async def add(self, attempt: DeliveryAttempt) -> None:
        try:
            async with self._db.session() as session:
                session.add(DeliveryAttemptRecord(**attempt.model_dump()))
        except IntegrityError as exc:
            raise Conflict(f"Delivery attempt {attempt.id} already recorded") from exc

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
        stmt = (
            update(DeliveryAttemptRecord)
            .where(
                and_(
                    DeliveryAttemptRecord.id == attempt_id,
                    DeliveryAttemptRecord.outcome == DeliveryOutcome.PENDING,
                )
            )
            .values(
                outcome=outcome,
                status_code=status_code,
                duration_ms=duration_ms,
                response_body_snippet=response_body_snippet,
                error=error,
                finished_at=finished_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise Conflict(f"Delivery attempt {attempt_id} is not pending")
            row = await session.get(DeliveryAttemptRecord, attempt_id)
            return _to_attempt(row)

    async def list_for_job(self, job_id: UUID) -> Sequence[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttemptRecord)
            .where(DeliveryAttemptRecord.job_id == job_id)
            .order_by(
                DeliveryAttemptRecord.attempt_number.asc(),
                DeliveryAttemptRecord.created_at.asc(),
            )
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [_to_attempt(row) for row in result.scalars().all()]

    async def delete_for_job(self, job_id: UUID) -> int:
        stmt = delete(DeliveryAttemptRecord).where(
            DeliveryAttemptRecord.job_id == job_id
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount
