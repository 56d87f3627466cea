"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from newq.constants import (
    METRIC_CLAIM_ERRORS,
    METRIC_HANDLER_ERRORS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ACKED,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_NACKED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for queues and workers.

    Collects metrics for:
    - Job enqueues and claims
    - Acks and nacks
    - Handler and claim errors
    - Handler execution duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs leased by workers",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_acked = Counter(
            METRIC_JOBS_ACKED,
            "Total number of jobs acknowledged",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_nacked = Counter(
            METRIC_JOBS_NACKED,
            "Total number of jobs released with nack",
            ["queue", "requeue"],
            registry=self._registry,
        )

        self.handler_errors = Counter(
            METRIC_HANDLER_ERRORS,
            "Total number of handler exceptions",
            ["queue"],
            registry=self._registry,
        )

        self.claim_errors = Counter(
            METRIC_CLAIM_ERRORS,
            "Total number of failed claim calls",
            ["queue"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_jobs_claimed(self, queue: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.jobs_claimed.labels(queue=queue).inc(count)

    def record_job_acked(self, queue: str) -> None:
        self.jobs_acked.labels(queue=queue).inc()

    def record_job_nacked(self, queue: str, requeue: bool) -> None:
        self.jobs_nacked.labels(queue=queue, requeue=str(requeue).lower()).inc()

    def record_handler_error(self, queue: str) -> None:
        self.handler_errors.labels(queue=queue).inc()

    def record_claim_error(self, queue: str) -> None:
        self.claim_errors.labels(queue=queue).inc()

    def record_job_duration(self, queue: str, outcome: str, duration_seconds: float) -> None:
        """Record how long a handler ran."""
        self.job_duration.labels(queue=queue, outcome=outcome).observe(duration_seconds)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
