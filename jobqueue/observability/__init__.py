"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobqueue.observability.logging import job_log_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import get_tracer, job_span, setup_tracing

__all__ = [
    "setup_logging",
    "job_log_context",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "job_span",
]
