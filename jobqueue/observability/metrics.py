"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_RECLAIMED,
    METRIC_WEBHOOK_DELIVERIES,
    METRIC_WEBHOOK_LATENCY,
)


class MetricsCollector:
    """
    Prometheus metrics collector for one engine.

    Collects metrics for:
    - Queue depth per state
    - Job enqueues, claims and outcomes
    - Job execution duration
    - Stale ownership reclaims
    - Webhook deliveries
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional registry. A private one is created if not
                provided, so several engines can live in one process.
        """
        self._registry = registry or CollectorRegistry()

        # Queue depth gauge (by queue and state)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue and state",
            ["queue_name", "state"],
            registry=self._registry,
        )

        # Jobs enqueued counter
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue_name"],
            registry=self._registry,
        )

        # Attempt outcomes counter
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of finished job attempts by outcome",
            ["queue_name", "outcome"],
            registry=self._registry,
        )

        # Job duration histogram
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue_name", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        # Claims counter
        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["dispatcher_id"],
            registry=self._registry,
        )

        # Stale reclaim counter
        self.stale_reclaimed = Counter(
            METRIC_STALE_RECLAIMED,
            "Total number of stale active jobs reclaimed",
            ["queue_name"],
            registry=self._registry,
        )

        # Webhook deliveries counter
        self.webhook_deliveries = Counter(
            METRIC_WEBHOOK_DELIVERIES,
            "Total number of webhook delivery attempts",
            ["outcome"],
            registry=self._registry,
        )

        # Webhook latency histogram
        self.webhook_latency = Histogram(
            METRIC_WEBHOOK_LATENCY,
            "Webhook delivery latency in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, queue_name: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue_name=queue_name).inc()

    def record_job_claimed(self, dispatcher_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(dispatcher_id=dispatcher_id).inc()

    def record_job_finished(
        self,
        queue_name: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(queue_name=queue_name, outcome=outcome).inc()
        self.job_duration.labels(queue_name=queue_name, outcome=outcome).observe(
            duration_seconds
        )

    def record_stale_reclaimed(self, queue_name: str, count: int = 1) -> None:
        """Record reclaimed stale jobs."""
        self.stale_reclaimed.labels(queue_name=queue_name).inc(count)

    def record_webhook_delivery(self, outcome: str, duration_seconds: float) -> None:
        """Record one webhook delivery attempt."""
        self.webhook_deliveries.labels(outcome=outcome).inc()
        self.webhook_latency.observe(duration_seconds)

    def update_queue_depth(self, queue_name: str, counts: dict[str, int]) -> None:
        """Update queue depth gauges for a queue."""
        for state, count in counts.items():
            self.queue_depth.labels(queue_name=queue_name, state=state).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST
