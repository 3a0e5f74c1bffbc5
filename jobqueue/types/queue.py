"""
Queue configuration and read-side report types.
"""

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.config import Settings, get_settings


class RateLimit(BaseModel):
    """At most `max_dispatches` claims per rolling `window_seconds`."""

    model_config = ConfigDict(frozen=True)

    max_dispatches: int = Field(ge=1)
    window_seconds: float = Field(gt=0)


class RetentionPolicy(BaseModel):
    """How long completed and failed jobs are kept."""

    model_config = ConfigDict(frozen=True)

    max_count: int | None = Field(default=None, ge=0)
    max_age_seconds: float | None = Field(default=None, ge=0)


class QueueConfig(BaseModel):
    """
    Per-queue configuration.

    Frozen: the engine reads it once at start and never reloads it.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    concurrency: int = Field(default=5, ge=1)
    rate_limit: RateLimit | None = None
    default_max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0)
    backoff_jitter: float = Field(default=0.2, ge=0, lt=1)
    retention: RetentionPolicy = RetentionPolicy()
    backlog_threshold: int = Field(default=1000, ge=0)
    stall_tolerance: float = Field(default=1.5, ge=1)

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Settings | None = None,
        **overrides,
    ) -> "QueueConfig":
        """Build a config using the settings' queue defaults."""
        settings = settings or get_settings()
        values = {
            "name": name,
            "concurrency": settings.default_concurrency,
            "default_max_attempts": settings.default_max_attempts,
            "backoff_base_seconds": settings.backoff_base_seconds,
            "backoff_max_seconds": settings.backoff_max_seconds,
            "backoff_jitter": settings.backoff_jitter,
            "retention": RetentionPolicy(
                max_count=settings.retention_max_count,
                max_age_seconds=settings.retention_max_age_seconds,
            ),
            "backlog_threshold": settings.backlog_threshold,
            "stall_tolerance": settings.stall_tolerance,
        }
        values.update(overrides)
        return cls(**values)


class QueueStats(BaseModel):
    """Job counts per state for one queue."""

    queue_name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class HealthReport(BaseModel):
    """Aggregated health of all queues."""

    healthy: bool
    issues: list[str] = Field(default_factory=list)
    queues: dict[str, QueueStats] = Field(default_factory=dict)
