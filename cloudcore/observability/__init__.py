"""
Observability module: Metrics and structured logging.
"""

from cloudcore.observability.metrics import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    MetricsCollector,
)
from cloudcore.observability.logging import (
    ContextFormatter,
    JsonFormatter,
    LogLevel,
    current_context,
    log_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "EngineMetrics",
    "Counter",
    "Gauge",
    "Histogram",
    "JsonFormatter",
    "ContextFormatter",
    "LogLevel",
    "log_context",
    "current_context",
    "setup_logging",
]
