"""
OpenTelemetry tracing.

Job executions and webhook deliveries run inside spans named by the SPAN_*
constants. Until setup_tracing installs a provider, the global no-op
provider is used, so tests pay nothing for tracing.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.trace import Span, Tracer

from jobqueue import __version__
from jobqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)

TRACER_NAME = "jobqueue"


def setup_tracing(settings: Settings | None = None, console: bool = False) -> TracerProvider:
    """
    Install a tracer provider that exports spans over OTLP.

    Args:
        settings: Source of the service name and OTLP endpoint.
        console: Also print finished spans to stdout.

    Returns:
        The installed provider. Its `shutdown()` flushes pending spans.
    """
    settings = settings or get_settings()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_VERSION: __version__,
            }
        )
    )

    exporters: list[SpanExporter] = [
        OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
    ]
    if console:
        exporters.append(ConsoleSpanExporter())
    for exporter in exporters:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    logger.info(
        "Tracing enabled",
        extra={"otlp_endpoint": settings.otel_exporter_otlp_endpoint},
    )
    return provider


def get_tracer() -> Tracer:
    return trace.get_tracer(TRACER_NAME, __version__)


@contextmanager
def job_span(
    name: str,
    job_id: UUID,
    queue_name: str,
    attempt: int,
    **attributes: Any,
) -> Iterator[Span]:
    """
    Span around one piece of work done for a job.

    Exceptions escaping the block are recorded on the span, which is then
    marked as errored. `None`-valued attributes are skipped.
    """
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("job.id", str(job_id))
        span.set_attribute("job.queue", queue_name)
        span.set_attribute("job.attempt", attempt)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def instrument_fastapi(app: Any) -> None:
    """Trace every request handled by the API application."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Trace SQL statements issued by the job store.

    Args:
        engine: The sync engine behind an AsyncEngine.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)
