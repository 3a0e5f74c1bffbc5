"""
FastAPI application wrapping one queue engine.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from jobqueue import __version__
from jobqueue.api.routes import health_router, jobs_router, queues_router
from jobqueue.db.connection import Database
from jobqueue.engine import QueueEngine
from jobqueue.errors import Conflict, InvalidJob, JobNotFound
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from jobqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


def create_app(
    engine: QueueEngine,
    manage_engine: bool = False,
    database: Database | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: The engine served by the application.
        manage_engine: If True, the application's lifespan sets up logging
            and tracing and starts and stops the engine.
        database: Database to instrument with OpenTelemetry, if any.

    Returns:
        FastAPI: The configured application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        if manage_engine:
            setup_logging(engine.settings)
            provider = setup_tracing(engine.settings)
            await engine.start()
            logger.info("Application started")

        yield

        if manage_engine:
            await engine.stop()
            provider.shutdown()
            logger.info("Application shutdown")

    app = FastAPI(
        title="Job Queue API",
        description="At-least-once job queue with retries, scheduling and webhooks",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine

    @app.exception_handler(InvalidJob)
    async def invalid_job_handler(request: Request, exc: InvalidJob) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_job", exc)

    @app.exception_handler(JobNotFound)
    async def not_found_handler(request: Request, exc: JobNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "job_not_found", exc)

    @app.exception_handler(Conflict)
    async def conflict_handler(request: Request, exc: Conflict) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "conflict", exc)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(queues_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)
    if database is not None:
        instrument_sqlalchemy(database.engine.sync_engine)

    return app
