"""
Metrics Collector

Per-tenant ring buffers of message outcomes and fallback events,
aggregated on demand for the router and for reporting.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

import structlog

from ..analysis.analyzer import PerformanceMetrics
from ..flow.state import utcnow
from .base import EngineVariant

if TYPE_CHECKING:
    from ..resilience.fallback import FallbackEvent


logger = structlog.get_logger()


@dataclass
class MetricsConfig:
    """Configuration for the metrics collector."""
    window_seconds: float = 3600.0
    max_events_per_tenant: int = 10000
    max_fallback_events_per_tenant: int = 1000
    min_samples: int = 20  # Below this, live metrics are not trusted


@dataclass
class MetricEvent:
    """Outcome of one processed message."""
    engine: EngineVariant
    template_id: str
    tenant_id: str
    latency_ms: float
    capture_success: bool = True
    capture_attempted: bool = False
    degraded: bool = False
    fallback: bool = False
    error: bool = False
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    # Engine the router chose; differs from engine after a fallback
    routed_engine: Optional[EngineVariant] = None

    @property
    def routed(self) -> EngineVariant:
        return self.routed_engine or self.engine

    @property
    def succeeded(self) -> bool:
        return not (self.error or self.degraded)


@dataclass
class MetricsAggregate:
    """Aggregated view over a set of metric events."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    degraded_count: int = 0
    fallback_count: int = 0
    capture_attempts: int = 0
    capture_successes: int = 0
    average_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count if self.count else 0.0

    @property
    def fallback_rate(self) -> float:
        return self.fallback_count / self.count if self.count else 0.0

    @property
    def capture_success_rate(self) -> Optional[float]:
        if not self.capture_attempts:
            return None
        return self.capture_successes / self.capture_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "success_rate": round(self.success_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "degraded_count": self.degraded_count,
            "fallback_count": self.fallback_count,
            "fallback_rate": round(self.fallback_rate, 4),
            "capture_attempts": self.capture_attempts,
            "capture_success_rate": (
                round(self.capture_success_rate, 4)
                if self.capture_success_rate is not None else None
            ),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "p95_latency_ms": round(self.p95_latency_ms, 2),
        }


@dataclass
class LiveMetrics:
    """Recent outcomes for one template, as seen by the router."""
    sample_size: int = 0
    capture_success_rate: Optional[float] = None
    error_rate: float = 0.0
    enhanced_fallback_rate: float = 0.0
    enhanced_sample_size: int = 0


def _percentile(values: List[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, int(round(pct / 100 * len(ordered))) - 1))
    return ordered[index]


class MetricsCollector:
    """
    Collects message outcomes per tenant.

    Buffers are bounded both by size and by the time window; the oldest
    entries are evicted first. Recording is synchronous and never raises
    into the caller.
    """

    def __init__(self, config: Optional[MetricsConfig] = None):
        self.config = config or MetricsConfig()
        self._events: Dict[str, Deque[MetricEvent]] = defaultdict(
            lambda: deque(maxlen=self.config.max_events_per_tenant)
        )
        self._fallbacks: Dict[str, Deque["FallbackEvent"]] = defaultdict(
            lambda: deque(maxlen=self.config.max_fallback_events_per_tenant)
        )
        self._dropped = 0

    def record_event(self, event: MetricEvent) -> None:
        """Record a message outcome."""
        try:
            buffer = self._events[event.tenant_id]
            self._evict(buffer, event.timestamp)
            buffer.append(event)
        except Exception as e:
            self._dropped += 1
            logger.warning("metric_event_dropped", tenant_id=event.tenant_id, error=str(e))

    def record_fallback(self, event: "FallbackEvent") -> None:
        """Record a fallback event."""
        try:
            buffer = self._fallbacks[event.tenant_id]
            self._evict(buffer, event.timestamp)
            buffer.append(event)
        except Exception as e:
            self._dropped += 1
            logger.warning("fallback_event_dropped", tenant_id=event.tenant_id, error=str(e))

    def _evict(self, buffer: Deque[Any], now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.window_seconds)
        while buffer and buffer[0].timestamp < cutoff:
            buffer.popleft()

    def events(
        self,
        tenant_id: str,
        engine: Optional[EngineVariant] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        template_id: Optional[str] = None,
        routed_engine: Optional[EngineVariant] = None,
    ) -> List[MetricEvent]:
        """Events inside the window matching the filters."""
        cutoff = utcnow() - timedelta(seconds=self.config.window_seconds)
        start = max(start, cutoff) if start else cutoff

        result = []
        for event in list(self._events.get(tenant_id, ())):
            if event.timestamp < start:
                continue
            if end and event.timestamp > end:
                continue
            if engine and event.engine != engine:
                continue
            if template_id and event.template_id != template_id:
                continue
            if routed_engine and event.routed != routed_engine:
                continue
            result.append(event)
        return result

    def get_aggregated_metrics(
        self,
        tenant_id: str,
        engine: Optional[EngineVariant] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        template_id: Optional[str] = None,
        routed_engine: Optional[EngineVariant] = None,
    ) -> MetricsAggregate:
        """
        Aggregate a tenant's events.

        Args:
            tenant_id: Tenant to aggregate
            engine: Only events handled by this engine
            start: Lower time bound (clamped to the window)
            end: Upper time bound
            template_id: Only events for this template
            routed_engine: Only events the router sent to this engine

        Returns:
            MetricsAggregate
        """
        return self._aggregate(
            self.events(tenant_id, engine, start, end, template_id, routed_engine)
        )

    def _aggregate(self, events: List[MetricEvent]) -> MetricsAggregate:
        aggregate = MetricsAggregate()
        if not events:
            return aggregate

        latencies = []
        for event in events:
            aggregate.count += 1
            if event.succeeded:
                aggregate.success_count += 1
            if event.error:
                aggregate.error_count += 1
            if event.degraded:
                aggregate.degraded_count += 1
            if event.fallback:
                aggregate.fallback_count += 1
            if event.capture_attempted:
                aggregate.capture_attempts += 1
                if event.capture_success:
                    aggregate.capture_successes += 1
            latencies.append(event.latency_ms)

        aggregate.average_latency_ms = sum(latencies) / len(latencies)
        aggregate.p95_latency_ms = _percentile(latencies, 95)
        return aggregate

    def live_metrics(self, tenant_id: str, template_id: str) -> LiveMetrics:
        """Recent outcomes for a template, used as routing feedback."""
        events = self.events(tenant_id, template_id=template_id)
        overall = self._aggregate(events)
        enhanced = self._aggregate([e for e in events if e.routed == EngineVariant.ENHANCED])

        return LiveMetrics(
            sample_size=overall.count,
            capture_success_rate=overall.capture_success_rate,
            error_rate=overall.error_rate,
            enhanced_fallback_rate=enhanced.fallback_rate,
            enhanced_sample_size=enhanced.count,
        )

    def performance_metrics(self, tenant_id: str, template_id: str) -> Optional[PerformanceMetrics]:
        """Historical performance for the analyzer, once enough samples exist."""
        aggregate = self.get_aggregated_metrics(tenant_id, template_id=template_id)
        if aggregate.count < self.config.min_samples:
            return None
        return PerformanceMetrics(
            capture_success_rate=aggregate.capture_success_rate,
            error_rate=aggregate.error_rate,
            average_response_ms=aggregate.average_latency_ms,
            sample_size=aggregate.count,
        )

    def compare_engines(
        self,
        tenant_id: str,
        template_id: Optional[str] = None,
    ) -> Dict[str, MetricsAggregate]:
        """
        Baseline and enhanced aggregates side by side, grouped by the
        engine the router chose so enhanced fallbacks count against enhanced.
        """
        return {
            variant.value: self.get_aggregated_metrics(
                tenant_id, template_id=template_id, routed_engine=variant
            )
            for variant in EngineVariant
        }

    def fallback_events(self, tenant_id: str, limit: int = 100) -> List["FallbackEvent"]:
        events = list(self._fallbacks.get(tenant_id, ()))
        return events[-limit:]

    @property
    def dropped(self) -> int:
        return self._dropped
