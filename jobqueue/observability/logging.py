"""
Structured logging for the job queue.

Modules log through the standard library (`logging.getLogger(__name__)`
with `extra={...}`). structlog renders those records as JSON or console
lines and merges in the bound job context and the current trace ids.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace
from structlog.typing import EventDict, Processor

from jobqueue.config import Settings, get_settings

LOG_FORMATS = ("json", "console")

# Libraries whose INFO output drowns out job lifecycle records
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach the active span's trace and span ids, if any."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    raise ValueError(f"Unknown log format {log_format!r}, expected one of {LOG_FORMATS}")


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route package and library logging through structlog.

    Calling it again replaces the root handler instead of adding another.

    Args:
        settings: Source of `log_level` and `log_format`.

    Raises:
        ValueError: If `log_format` is neither json nor console.
    """
    settings = settings or get_settings()
    renderer = _renderer(settings.log_format)

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_log_context(job_id: str, queue_name: str, attempt: int) -> Iterator[None]:
    """
    Tag every record logged inside the block with the job being run.

    Bindings live in context variables, so concurrent executions in
    separate tasks never see each other's job ids.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job_id, queue_name=queue_name, attempt=attempt
    ):
        yield
