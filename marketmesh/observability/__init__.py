"""
Observability module: Metrics and structured logging.
"""

from marketmesh.observability.metrics import (
    MetricsCollector,
    MeshMetrics,
    Counter,
    Histogram,
)
from marketmesh.observability.logging import StructuredLogger, LogLevel, setup_logging

__all__ = [
    "MetricsCollector",
    "MeshMetrics",
    "Counter",
    "Histogram",
    "StructuredLogger",
    "LogLevel",
    "setup_logging",
]
