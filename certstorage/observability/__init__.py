"""
Observability module: Metrics and structured logging.
"""

from certstorage.observability.metrics import MetricsCollector, Counter, Histogram
from certstorage.observability.logging import StructuredLogger, LogLevel, setup_logging

__all__ = [
    "MetricsCollector",
    "Counter",
    "Histogram",
    "StructuredLogger",
    "LogLevel",
    "setup_logging",
]
