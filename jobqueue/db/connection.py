"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import Settings, get_settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns one async engine and its session factory.

    Passed explicitly to the SQL stores so several isolated databases can
    coexist in one process.
    """

    def __init__(
        self,
        database_url: str | None = None,
        settings: Settings | None = None,
    ):
        """
        Create the engine.

        Args:
            database_url: Database URL. Defaults to the configured one.
            settings: Settings to read pool options from.
        """
        settings = settings or get_settings()
        self.url = database_url or settings.database_url

        if self.url.startswith("sqlite"):
            self._engine = create_async_engine(
                self.url,
                poolclass=NullPool,
                echo=False,
            )
        else:
            self._engine = create_async_engine(
                self.url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                echo=settings.log_level == "DEBUG",
                pool_pre_ping=True,
            )

        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create the tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self._engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for getting async database sessions.

        Commits on success, rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
