"""System router: picks the baseline or enhanced engine per message."""

import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

import structlog

from ..analysis.analyzer import CapabilityTag, ComplexityAnalysis, RiskLevel
from ..analytics.metrics import LiveMetrics
from ..analytics.base import EngineVariant
from ..flow.graph import FlowGraph
from ..flow.state import utcnow


logger = structlog.get_logger()


class RoutingStrategy(str, Enum):
    """How eagerly the enhanced path is chosen."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


_STRATEGY_OFFSET = {
    RoutingStrategy.CONSERVATIVE: 0.15,
    RoutingStrategy.BALANCED: 0.0,
    RoutingStrategy.AGGRESSIVE: -0.15,
}


@dataclass
class RouterConfig:
    """Configuration for the system router."""

    # Feature flags
    enhanced_enabled: bool = True
    disabled_tenants: Set[str] = field(default_factory=set)
    disabled_templates: Set[str] = field(default_factory=set)

    # Forced overrides
    forced_enhanced_tenants: Set[str] = field(default_factory=set)
    forced_enhanced_templates: Set[str] = field(default_factory=set)
    forced_baseline_tenants: Set[str] = field(default_factory=set)
    forced_baseline_templates: Set[str] = field(default_factory=set)

    # Percentage of users eligible for the enhanced path
    rollout_percentage: float = 100.0

    # Decision policy
    confidence_threshold: float = 0.6
    strategy: RoutingStrategy = RoutingStrategy.BALANCED
    score_weight: float = 0.6
    capture_weight: float = 0.25
    error_weight: float = 0.15
    low_risk_confidence: float = 0.95
    min_live_samples: int = 20
    max_enhanced_fallback_rate: float = 0.5

    # Decision cache
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 10000

    # Fallback
    fallback_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class FallbackStrategy:
    """What happens when the enhanced path fails."""
    revert_to: EngineVariant = EngineVariant.BASELINE
    preserve_state: bool = True
    timeout_seconds: float = 5.0

    @property
    def name(self) -> str:
        return "revert_to_baseline_preserve_state"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "revert_to": self.revert_to.value,
            "preserve_state": self.preserve_state,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class RoutingContext:
    """Who and what a message is for."""
    tenant_id: str
    user_id: str
    session_id: str
    template_id: str
    request_id: Optional[str] = None


@dataclass
class RoutingDecision:
    """Engine choice for one message."""
    engine: EngineVariant
    confidence: float
    recommended_modules: FrozenSet[CapabilityTag]
    fallback_strategy: FallbackStrategy
    reasons: List[str] = field(default_factory=list)
    template_id: Optional[str] = None
    template_version: Optional[str] = None
    decided_at: datetime = field(default_factory=utcnow)
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.value,
            "confidence": round(self.confidence, 4),
            "recommended_modules": sorted(m.value for m in self.recommended_modules),
            "fallback_strategy": self.fallback_strategy.to_dict(),
            "reasons": list(self.reasons),
            "template_id": self.template_id,
            "template_version": self.template_version,
            "decided_at": self.decided_at.isoformat(),
            "cached": self.cached,
        }


@dataclass
class _CacheEntry:
    version: str
    expires_at: float
    decision: RoutingDecision


class SystemRouter:
    """
    Decides which engine variant handles a message.

    The analysis-driven part of the decision is cached per
    (template, tenant) for a short TTL and dropped as soon as the
    template version changes. Feature flags, overrides and the rollout
    bucket are applied on every call.
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or RouterConfig()
        self._clock = clock or time.monotonic
        self._cache: "OrderedDict[Tuple[str, str], _CacheEntry]" = OrderedDict()
        self._stats = {"decisions": 0, "cache_hits": 0, "enhanced": 0, "baseline": 0}

    @property
    def fallback_strategy(self) -> FallbackStrategy:
        return FallbackStrategy(timeout_seconds=self.config.fallback_timeout_seconds)

    def route(
        self,
        graph: FlowGraph,
        analysis: ComplexityAnalysis,
        live_metrics: Optional[LiveMetrics],
        context: RoutingContext,
    ) -> RoutingDecision:
        """
        Decide which engine handles the message.

        Args:
            graph: Template being executed
            analysis: Complexity analysis of the template
            live_metrics: Recent outcomes for this template, if any
            context: Tenant, user and session of the message

        Returns:
            RoutingDecision
        """
        decision = self._gate(graph, context)
        if decision is None:
            key = (context.template_id, context.tenant_id)
            entry = self._cache.get(key)
            now = self._clock()
            if entry and entry.version == graph.version and entry.expires_at > now:
                self._stats["cache_hits"] += 1
                decision = self._copy(entry.decision, cached=True)
            else:
                decision = self._decide(graph, analysis, live_metrics)
                self._store(key, decision, graph.version, now)
            decision = self._apply_rollout(decision, context)

        self._record(decision, context)
        return decision

    def _store(
        self,
        key: Tuple[str, str],
        decision: RoutingDecision,
        version: str,
        now: float,
    ) -> None:
        self._cache[key] = _CacheEntry(
            version=version,
            expires_at=now + self.config.cache_ttl_seconds,
            decision=decision,
        )
        self._cache.move_to_end(key)

        # Entries share one TTL, so insertion order is expiry order
        while self._cache:
            oldest = next(iter(self._cache.values()))
            if oldest.expires_at > now and len(self._cache) <= self.config.cache_max_entries:
                break
            self._cache.popitem(last=False)

    def lookup(self, graph: FlowGraph, context: RoutingContext) -> Optional[RoutingDecision]:
        """
        Decision without a fresh analysis, if flags or the cache settle it.

        Returns None when the caller has to analyze the template and call
        ``route``.
        """
        decision = self._gate(graph, context)
        if decision is None:
            entry = self._cache.get((context.template_id, context.tenant_id))
            if not entry or entry.version != graph.version or entry.expires_at <= self._clock():
                return None
            self._stats["cache_hits"] += 1
            decision = self._apply_rollout(self._copy(entry.decision, cached=True), context)

        self._record(decision, context)
        return decision

    def invalidate(
        self,
        template_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Drop cached decisions. Returns the number removed."""
        keys = [
            key for key in self._cache
            if (template_id is None or key[0] == template_id)
            and (tenant_id is None or key[1] == tenant_id)
        ]
        for key in keys:
            del self._cache[key]
        return len(keys)

    def _gate(self, graph: FlowGraph, context: RoutingContext) -> Optional[RoutingDecision]:
        """Feature flags and forced overrides."""
        c = self.config

        if not c.enhanced_enabled:
            return self._baseline(graph, 1.0, "enhanced path disabled globally")
        if context.tenant_id in c.disabled_tenants:
            return self._baseline(graph, 1.0, "enhanced path disabled for tenant")
        if context.template_id in c.disabled_templates:
            return self._baseline(graph, 1.0, "enhanced path disabled for template")

        if context.template_id in c.forced_baseline_templates:
            return self._baseline(graph, 1.0, "template forced to baseline")
        if context.tenant_id in c.forced_baseline_tenants:
            return self._baseline(graph, 1.0, "tenant forced to baseline")

        if (
            context.template_id in c.forced_enhanced_templates
            or context.tenant_id in c.forced_enhanced_tenants
        ):
            return RoutingDecision(
                engine=EngineVariant.ENHANCED,
                confidence=1.0,
                recommended_modules=frozenset(CapabilityTag),
                fallback_strategy=self.fallback_strategy,
                reasons=["enhanced path forced by override"],
                template_id=graph.id,
                template_version=graph.version,
            )

        return None

    def _decide(
        self,
        graph: FlowGraph,
        analysis: ComplexityAnalysis,
        live: Optional[LiveMetrics],
    ) -> RoutingDecision:
        c = self.config

        if analysis.risk_level == RiskLevel.LOW:
            return self._baseline(graph, c.low_risk_confidence, "low risk template")

        if (
            live is not None
            and live.enhanced_sample_size >= c.min_live_samples
            and live.enhanced_fallback_rate > c.max_enhanced_fallback_rate
        ):
            logger.warning(
                "enhanced_path_suspended",
                template_id=graph.id,
                fallback_rate=live.enhanced_fallback_rate,
            )
            return self._baseline(
                graph, 0.9, f"enhanced fallback rate {live.enhanced_fallback_rate:.0%}"
            )

        confidence = self._enhanced_confidence(analysis, live)
        threshold = min(1.0, max(0.0, c.confidence_threshold + _STRATEGY_OFFSET[c.strategy]))
        reasons = [
            f"risk {analysis.risk_level.value}",
            f"enhanced confidence {confidence:.2f} vs threshold {threshold:.2f}",
        ]

        if confidence >= threshold and analysis.recommended_modules:
            return RoutingDecision(
                engine=EngineVariant.ENHANCED,
                confidence=confidence,
                recommended_modules=analysis.recommended_modules,
                fallback_strategy=self.fallback_strategy,
                reasons=reasons,
                template_id=graph.id,
                template_version=graph.version,
            )

        if not analysis.recommended_modules:
            reasons.append("no enhanced modules recommended")
        return self._baseline(graph, 1.0 - confidence, *reasons)

    def _enhanced_confidence(
        self,
        analysis: ComplexityAnalysis,
        live: Optional[LiveMetrics],
    ) -> float:
        c = self.config
        terms = [(c.score_weight, analysis.score)]

        if live is not None and live.sample_size >= c.min_live_samples:
            if live.capture_success_rate is not None:
                terms.append((c.capture_weight, 1.0 - live.capture_success_rate))
            terms.append((c.error_weight, live.error_rate))

        total = sum(weight for weight, _ in terms)
        if total <= 0:
            return 0.0
        return max(0.0, min(1.0, sum(w * v for w, v in terms) / total))

    def _apply_rollout(self, decision: RoutingDecision, context: RoutingContext) -> RoutingDecision:
        pct = self.config.rollout_percentage
        if decision.engine != EngineVariant.ENHANCED or pct >= 100:
            return decision

        bucket = rollout_bucket(context.tenant_id, context.user_id)
        if bucket < pct:
            return decision

        return RoutingDecision(
            engine=EngineVariant.BASELINE,
            confidence=1.0,
            recommended_modules=frozenset(),
            fallback_strategy=decision.fallback_strategy,
            reasons=decision.reasons + [f"user outside {pct:.0f}% rollout"],
            template_id=decision.template_id,
            template_version=decision.template_version,
            cached=decision.cached,
        )

    def _baseline(self, graph: FlowGraph, confidence: float, *reasons: str) -> RoutingDecision:
        return RoutingDecision(
            engine=EngineVariant.BASELINE,
            confidence=confidence,
            recommended_modules=frozenset(),
            fallback_strategy=self.fallback_strategy,
            reasons=list(reasons),
            template_id=graph.id,
            template_version=graph.version,
        )

    @staticmethod
    def _copy(decision: RoutingDecision, cached: bool) -> RoutingDecision:
        return RoutingDecision(
            engine=decision.engine,
            confidence=decision.confidence,
            recommended_modules=decision.recommended_modules,
            fallback_strategy=decision.fallback_strategy,
            reasons=list(decision.reasons),
            template_id=decision.template_id,
            template_version=decision.template_version,
            decided_at=decision.decided_at,
            cached=cached,
        )

    def _record(self, decision: RoutingDecision, context: RoutingContext) -> None:
        self._stats["decisions"] += 1
        self._stats[decision.engine.value] += 1
        logger.debug(
            "routing_decision",
            tenant_id=context.tenant_id,
            template_id=context.template_id,
            engine=decision.engine.value,
            confidence=round(decision.confidence, 3),
            cached=decision.cached,
        )

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats, cached_decisions=len(self._cache))


def rollout_bucket(tenant_id: str, user_id: str) -> float:
    """Deterministic 0-100 bucket for a user."""
    hash_input = f"{tenant_id}:{user_id}"
    hash_value = int(hashlib.md5(hash_input.encode()).hexdigest(), 16)
    return (hash_value % 10000) / 100.0
