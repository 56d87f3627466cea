"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from newq.observability.logging import get_logger, setup_logging
from newq.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from newq.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
