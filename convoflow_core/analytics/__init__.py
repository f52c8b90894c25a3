"""Message outcome metrics."""

from .base import EngineVariant
from .metrics import (
    MetricsConfig,
    MetricEvent,
    MetricsAggregate,
    LiveMetrics,
    MetricsCollector,
)

__all__ = [
    "EngineVariant",
    "MetricsConfig",
    "MetricEvent",
    "MetricsAggregate",
    "LiveMetrics",
    "MetricsCollector",
]
