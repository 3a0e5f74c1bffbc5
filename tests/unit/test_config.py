"""
Tests for settings and queue configuration defaults.
"""

import pytest
from pydantic import ValidationError

from jobqueue.config import Settings
from jobqueue.types.queue import QueueConfig, RateLimit


class TestSettings:
    """Tests for environment-driven settings."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_CONCURRENCY", "12")
        monkeypatch.setenv("WEBHOOK_SECRET", "from-env")

        settings = Settings()

        assert settings.default_concurrency == 12
        assert settings.webhook_secret == "from-env"


class TestQueueConfig:
    """Tests for per-queue configuration."""

    def test_from_settings_uses_defaults(self, test_settings: Settings):
        config = QueueConfig.from_settings("emails", test_settings, concurrency=2)

        assert config.name == "emails"
        assert config.concurrency == 2
        assert config.default_max_attempts == test_settings.default_max_attempts
        assert config.backoff_jitter == 0.0
        assert config.retention.max_count == test_settings.retention_max_count

    def test_config_is_frozen(self):
        config = QueueConfig(name="q")

        with pytest.raises(ValidationError):
            config.concurrency = 10

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValidationError):
            QueueConfig(name="q", concurrency=0)
        with pytest.raises(ValidationError):
            RateLimit(max_dispatches=1, window_seconds=0)

    @pytest.mark.asyncio
    async def test_engine_accepts_queue_name(self, make_engine, succeeding_executor):
        engine = make_engine()

        engine.add_queue("reports", succeeding_executor())

        assert engine.queues["reports"].backoff_jitter == 0.0
        assert engine.queues["reports"].concurrency == engine.settings.default_concurrency
