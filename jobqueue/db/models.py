"""
SQLAlchemy database models.
Defines the jobs and delivery_attempts tables.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import DeliveryOutcome, JobState

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    Row representing a job.

    This is the authoritative source of truth for job state.

    Key constraints:
    - state changes are compare-and-swap on (state, version)
    - lease_owner and last_heartbeat_at track which dispatcher holds an
      active job and whether it is still alive
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonColumn, nullable=False, default=dict)

    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.WAITING,
    )

    # Retry tracking
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recurrence: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    # Ownership
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Index for due-time polling per queue
        Index("ix_jobs_queue_state_due", "queue_name", "state", "next_run_at"),
    )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, queue={self.queue_name}, "
            f"state={self.state}, attempt={self.attempts_made}/{self.max_attempts})"
        )


class DeliveryAttemptRecord(Base):
    """Row representing one webhook delivery attempt."""

    __tablename__ = "delivery_attempts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_body_snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[DeliveryOutcome] = mapped_column(
        Enum(
            DeliveryOutcome,
            name="delivery_outcome",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=DeliveryOutcome.PENDING,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
