"""Unit tests for the system router."""

import pytest

from convoflow_core.analysis.analyzer import (
    CapabilityTag,
    ComplexityAnalysis,
    RiskLevel,
    TemplateComplexityAnalyzer,
)
from convoflow_core.analytics.base import EngineVariant
from convoflow_core.analytics.metrics import LiveMetrics
from convoflow_core.flow.graph import FlowGraph
from convoflow_core.routing.router import (
    RouterConfig,
    RoutingContext,
    RoutingStrategy,
    SystemRouter,
    rollout_bucket,
)


class FakeClock:
    """Controllable monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _analysis(graph, score, risk, modules=frozenset({CapabilityTag.ENHANCED_CAPTURE})):
    return ComplexityAnalysis(
        template_id=graph.id,
        version=graph.version,
        score=score,
        risk_level=risk,
        recommended_modules=frozenset(modules),
        signals=TemplateComplexityAnalyzer().measure(graph),
    )


@pytest.fixture
def context():
    return RoutingContext(
        tenant_id="tenant-1",
        user_id="user-1",
        session_id="session-1",
        template_id="greeting",
    )


class TestDecisionPolicy:
    """Tests for analysis-driven decisions."""

    def test_low_risk_goes_baseline(self, greeting_graph, context):
        """Test that low risk templates stay on the baseline engine."""
        router = SystemRouter()

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.1, RiskLevel.LOW), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert decision.confidence == 0.95
        assert decision.recommended_modules == frozenset()
        assert decision.fallback_strategy.name == "revert_to_baseline_preserve_state"

    def test_high_score_goes_enhanced(self, greeting_graph, context):
        """Test choosing the enhanced engine above the threshold."""
        router = SystemRouter()

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert decision.engine == EngineVariant.ENHANCED
        assert decision.confidence == pytest.approx(0.9)
        assert decision.recommended_modules == frozenset({CapabilityTag.ENHANCED_CAPTURE})

    def test_below_threshold_goes_baseline(self, greeting_graph, context):
        """Test staying on baseline when confidence is too low."""
        router = SystemRouter()

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.4, RiskLevel.MEDIUM), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert decision.confidence == pytest.approx(0.6)

    def test_no_modules_goes_baseline(self, greeting_graph, context):
        """Test that high risk without recommended modules stays on baseline."""
        router = SystemRouter()
        analysis = _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL, modules=frozenset())

        decision = router.route(greeting_graph, analysis, None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert "no enhanced modules recommended" in decision.reasons

    @pytest.mark.parametrize("strategy,expected", [
        (RoutingStrategy.CONSERVATIVE, EngineVariant.BASELINE),
        (RoutingStrategy.BALANCED, EngineVariant.ENHANCED),
        (RoutingStrategy.AGGRESSIVE, EngineVariant.ENHANCED),
    ])
    def test_strategy_shifts_threshold(self, greeting_graph, context, strategy, expected):
        """Test that the strategy moves the confidence threshold."""
        router = SystemRouter(RouterConfig(strategy=strategy))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.65, RiskLevel.HIGH), None, context)

        assert decision.engine == expected

    def test_live_metrics_raise_confidence(self, greeting_graph, context):
        """Test that poor live capture rates push toward enhanced."""
        router = SystemRouter()
        live = LiveMetrics(sample_size=50, capture_success_rate=0.0, error_rate=0.5)

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.5, RiskLevel.HIGH), live, context)

        assert decision.engine == EngineVariant.ENHANCED
        assert decision.confidence > 0.5

    def test_high_fallback_rate_suspends_enhanced(self, greeting_graph, context):
        """Test the guard against an enhanced path that keeps failing."""
        router = SystemRouter()
        live = LiveMetrics(sample_size=40, enhanced_fallback_rate=0.8, enhanced_sample_size=30)

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), live, context)

        assert decision.engine == EngineVariant.BASELINE


class TestFlags:
    """Tests for feature flags, overrides and rollout."""

    def test_disabled_globally(self, greeting_graph, context):
        """Test the global kill switch."""
        router = SystemRouter(RouterConfig(enhanced_enabled=False))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert decision.confidence == 1.0

    def test_disabled_for_tenant(self, greeting_graph, context):
        """Test disabling the enhanced path for one tenant."""
        router = SystemRouter(RouterConfig(disabled_tenants={"tenant-1"}))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert decision.engine == EngineVariant.BASELINE

    def test_forced_enhanced(self, greeting_graph, context):
        """Test forcing the enhanced path for a template."""
        router = SystemRouter(RouterConfig(forced_enhanced_templates={"greeting"}))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.0, RiskLevel.LOW), None, context)

        assert decision.engine == EngineVariant.ENHANCED
        assert decision.recommended_modules == frozenset(CapabilityTag)

    def test_forced_baseline_wins_over_forced_enhanced(self, greeting_graph, context):
        """Test override precedence."""
        router = SystemRouter(RouterConfig(
            forced_enhanced_tenants={"tenant-1"},
            forced_baseline_templates={"greeting"},
        ))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert decision.engine == EngineVariant.BASELINE

    def test_zero_rollout(self, greeting_graph, context):
        """Test that users outside the rollout get the baseline engine."""
        router = SystemRouter(RouterConfig(rollout_percentage=0.0))

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert any("rollout" in reason for reason in decision.reasons)

    def test_rollout_bucket_deterministic(self):
        """Test that bucketing is stable and in range."""
        bucket = rollout_bucket("tenant-1", "user-1")

        assert bucket == rollout_bucket("tenant-1", "user-1")
        assert 0.0 <= bucket < 100.0


class TestDecisionCache:
    """Tests for the per-template decision cache."""

    def test_cached_within_ttl(self, greeting_graph, context):
        """Test that a second call reuses the decision."""
        router = SystemRouter()
        router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.1, RiskLevel.LOW), None, context)

        assert decision.engine == EngineVariant.ENHANCED
        assert decision.cached
        assert router.get_stats()["cache_hits"] == 1

    def test_expires_after_ttl(self, greeting_graph, context):
        """Test that decisions expire."""
        clock = FakeClock()
        router = SystemRouter(RouterConfig(cache_ttl_seconds=30), clock=clock)
        router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        clock.now += 31
        decision = router.route(greeting_graph, _analysis(greeting_graph, 0.1, RiskLevel.LOW), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert not decision.cached

    def test_expired_entries_evicted(self, greeting_graph, context):
        """Test that expired decisions for other tenants are dropped."""
        clock = FakeClock()
        router = SystemRouter(RouterConfig(cache_ttl_seconds=30), clock=clock)
        analysis = _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL)
        router.route(greeting_graph, analysis, None, context)

        clock.now += 31
        other = RoutingContext(
            tenant_id="tenant-2", user_id="user-1", session_id="session-1", template_id="greeting"
        )
        router.route(greeting_graph, analysis, None, other)

        assert router.get_stats()["cached_decisions"] == 1

    def test_cache_bounded(self, greeting_graph):
        """Test that the oldest decisions are evicted past the size limit."""
        router = SystemRouter(RouterConfig(cache_max_entries=2))
        analysis = _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL)
        contexts = [
            RoutingContext(
                tenant_id=f"tenant-{index}", user_id="user-1", session_id="session-1", template_id="greeting"
            )
            for index in range(3)
        ]
        for ctx in contexts:
            router.route(greeting_graph, analysis, None, ctx)

        assert router.get_stats()["cached_decisions"] == 2
        assert router.lookup(greeting_graph, contexts[0]) is None
        assert router.lookup(greeting_graph, contexts[2]) is not None

    def test_new_version_invalidates(self, greeting_template, context):
        """Test that a template version change bypasses the cache."""
        router = SystemRouter()
        v1 = FlowGraph.from_template(greeting_template, template_id="greeting", version="1")
        v2 = FlowGraph.from_template(greeting_template, template_id="greeting", version="2")
        router.route(v1, _analysis(v1, 0.9, RiskLevel.CRITICAL), None, context)

        decision = router.route(v2, _analysis(v2, 0.1, RiskLevel.LOW), None, context)

        assert decision.engine == EngineVariant.BASELINE
        assert decision.template_version == "2"

    def test_lookup(self, greeting_graph, context):
        """Test that lookup only answers from flags or the cache."""
        router = SystemRouter()

        assert router.lookup(greeting_graph, context) is None

        router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)
        decision = router.lookup(greeting_graph, context)

        assert decision is not None
        assert decision.engine == EngineVariant.ENHANCED
        assert decision.cached

    def test_lookup_answers_flags(self, greeting_graph, context):
        """Test that flag decisions need no analysis."""
        router = SystemRouter(RouterConfig(enhanced_enabled=False))

        decision = router.lookup(greeting_graph, context)

        assert decision.engine == EngineVariant.BASELINE

    def test_invalidate(self, greeting_graph, context):
        """Test dropping cached decisions."""
        router = SystemRouter()
        router.route(greeting_graph, _analysis(greeting_graph, 0.9, RiskLevel.CRITICAL), None, context)

        assert router.invalidate(template_id="greeting") == 1
        assert router.lookup(greeting_graph, context) is None
