"""
Observability module: Metrics and structured logging.
"""

from snapsync.observability.metrics import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    SyncMetrics,
    get_metrics,
)
from snapsync.observability.logging import (
    StructuredLogger,
    JsonFormatter,
    LogLevel,
    log_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "SyncMetrics",
    "get_metrics",
    "StructuredLogger",
    "JsonFormatter",
    "LogLevel",
    "log_context",
    "setup_logging",
]
