"""Unit tests for the conversation processor."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from convoflow_core.analysis.analyzer import (
    CapabilityTag,
    ComplexityAnalysis,
    RiskLevel,
    TemplateComplexityAnalyzer,
)
from convoflow_core.analytics.base import EngineVariant
from convoflow_core.core.errors import (
    BaselineExecutionError,
    EnhancedModuleTimeout,
    StorePersistenceError,
    TransientProcessingError,
    UnknownTemplateError,
)
from convoflow_core.engines.base import Engine
from convoflow_core.engines.enhanced import EnhancedEngine
from convoflow_core.flow.state import ConversationState
from convoflow_core.leads.funnel import LeadStageDispatcher
from convoflow_core.processing import ConversationProcessor
from convoflow_core.routing.router import RouterConfig, RoutingContext, SystemRouter
from convoflow_core.store.base import SaveResult
from convoflow_core.store.memory import InMemoryStateStore


TENANT, USER, SESSION = "tenant-1", "user-1", "session-1"


class FlakyEngine(Engine):
    """Enhanced engine that times out on selected calls."""

    variant = EngineVariant.ENHANCED

    def __init__(self, fail_on):
        self.inner = EnhancedEngine()
        self.fail_on = set(fail_on)
        self.calls = 0

    async def step(self, graph, state, inbound_text, session=None, modules=frozenset()):
        self.calls += 1
        if self.calls in self.fail_on:
            raise EnhancedModuleTimeout("enhanced_capture", 2.0, 2.0)
        return await self.inner.step(graph, state, inbound_text, session=session, modules=modules)


def _enhanced_processor(registry, store, retry, template_id, fail_on, **kwargs):
    return ConversationProcessor(
        registry,
        store,
        router=SystemRouter(RouterConfig(forced_enhanced_templates={template_id})),
        enhanced=FlakyEngine(fail_on),
        retry=retry,
        **kwargs,
    )


async def _send(processor, text, template_id="greeting", session_id=SESSION):
    return await processor.process_message(TENANT, USER, session_id, template_id, text)


class TestProcessMessage:
    """Tests for ConversationProcessor.process_message."""

    @pytest.mark.asyncio
    async def test_greeting_conversation(self, processor, store):
        """Test a two-message conversation on the baseline engine."""
        first = await _send(processor, "hello")
        second = await _send(processor, "Maria")

        assert [o.text for o in first.outputs] == ["Welcome! What's your name?"]
        assert first.state.current_node_id == "ask_name"
        assert first.engine_used == EngineVariant.BASELINE
        assert [o.text for o in second.outputs] == ["Thanks Maria!"]
        assert second.state.context["name"] == "Maria"

        stored = await store.load(TENANT, USER, SESSION)
        assert stored.version == 2
        assert stored.current_node_id == "end"
        assert stored.completed

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, processor):
        """Test that each message produces a metric event."""
        await _send(processor, "hello")
        await _send(processor, "Maria")

        aggregate = processor.metrics.get_aggregated_metrics(TENANT, template_id="greeting")
        assert aggregate.count == 2
        assert aggregate.capture_attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_template(self, processor):
        """Test messages for a template that does not exist."""
        with pytest.raises(UnknownTemplateError):
            await _send(processor, "hello", template_id="missing")

    @pytest.mark.asyncio
    async def test_completed_session_not_saved(self, processor, store):
        """Test that messages after completion change nothing."""
        await _send(processor, "hello")
        await _send(processor, "Maria")

        result = await _send(processor, "anyone there?")

        assert result.outputs == []
        assert result.state.completed
        assert (await store.load(TENANT, USER, SESSION)).version == 2

    @pytest.mark.asyncio
    async def test_prior_state_used(self, processor, greeting_graph):
        """Test a caller-supplied state."""
        prior = ConversationState.initial(greeting_graph, TENANT, USER, "prior")
        prior.current_node_id = "ask_name"
        prior.history = ["start", "ask_name"]

        result = await processor.process_message(TENANT, USER, "prior", "greeting", "Maria", prior_state=prior)

        assert result.state.context["name"] == "Maria"
        assert result.state.version == 1
        assert prior.context == {}

    @pytest.mark.asyncio
    async def test_template_change_restarts_session(self, processor, registry, store):
        """Test a session whose node was removed from the template."""
        await _send(processor, "hello")
        await registry.register("greeting", {
            "entryNodeId": "intro",
            "nodes": [
                {"id": "intro", "type": "message", "content": "New flow", "next": "bye"},
                {"id": "bye", "type": "terminal", "content": "Bye"},
            ],
        })

        result = await _send(processor, "Maria")

        assert [o.text for o in result.outputs] == ["New flow", "Bye"]
        assert (await store.load(TENANT, USER, SESSION)).version == 2

    @pytest.mark.asyncio
    async def test_concurrent_messages_serialized(self, processor, store):
        """Test that two deliveries for one session never read the same state."""
        results = await asyncio.gather(_send(processor, "hello"), _send(processor, "hello"))

        assert sorted(r.state.version for r in results) == [1, 2]
        assert (await store.load(TENANT, USER, SESSION)).history == ["start", "ask_name", "end"]

    @pytest.mark.asyncio
    async def test_reset_session(self, processor, store):
        """Test deleting a session so it starts over."""
        await _send(processor, "hello")

        assert await processor.reset_session(TENANT, USER, SESSION) is True
        assert await store.load(TENANT, USER, SESSION) is None

        result = await _send(processor, "hello again")
        assert result.state.current_node_id == "ask_name"
        assert result.state.version == 1


class TestPersistenceFailures:
    """Tests for store failures and version conflicts."""

    @pytest.mark.asyncio
    async def test_conflict_retried(self, processor, store):
        """Test recomputing the turn after a concurrent write."""
        real_save = store.save
        expected_versions = []

        async def save_once_conflicting(state, expected_version=None):
            expected_versions.append(expected_version)
            if len(expected_versions) == 1:
                return SaveResult(ok=False, version=0)
            return await real_save(state, expected_version)

        store.save = save_once_conflicting

        result = await _send(processor, "hello")

        assert expected_versions == [0, 0]
        assert result.state.version == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_is_transient(self, processor, store):
        """Test giving up after repeated version conflicts."""
        store.save = AsyncMock(return_value=SaveResult(ok=False, version=7))

        with pytest.raises(TransientProcessingError):
            await _send(processor, "hello")

        assert store.save.await_count == processor.cas_max_retries

    @pytest.mark.asyncio
    async def test_store_outage_is_transient(self, processor, store):
        """Test that load failures are retried and then surfaced."""
        store.load = AsyncMock(side_effect=StorePersistenceError("load", "tenant-1:user-1:session-1"))

        with pytest.raises(TransientProcessingError):
            await _send(processor, "hello")

        assert store.load.await_count == 3

    @pytest.mark.asyncio
    async def test_store_blip_recovered(self, processor, store):
        """Test a single load failure."""
        store.load = AsyncMock(side_effect=[StorePersistenceError("load", "k"), None])

        result = await _send(processor, "hello")

        assert result.state.current_node_id == "ask_name"

    @pytest.mark.asyncio
    async def test_baseline_failure_leaves_state(self, processor, store):
        """Test that a baseline failure is raised and nothing is saved."""
        await _send(processor, "hello")
        processor.baseline.step = AsyncMock(side_effect=BaselineExecutionError("boom"))

        with pytest.raises(BaselineExecutionError):
            await _send(processor, "Maria")

        stored = await store.load(TENANT, USER, SESSION)
        assert stored.version == 1
        assert stored.current_node_id == "ask_name"
        assert processor.metrics.get_aggregated_metrics(TENANT).error_count == 1


class TestEnhancedPath:
    """Tests for enhanced routing and fallback."""

    @pytest.mark.asyncio
    async def test_timeout_on_second_step_matches_baseline(self, registry, store, no_sleep_retry):
        """Test that a fallback turn ends where the baseline alone would."""
        enhanced = _enhanced_processor(registry, store, no_sleep_retry, "greeting", fail_on={2})
        baseline = ConversationProcessor(registry, InMemoryStateStore(), retry=no_sleep_retry)

        await _send(enhanced, "hello")
        result = await _send(enhanced, "Maria")
        await _send(baseline, "hello")
        expected = await _send(baseline, "Maria")

        assert result.engine_used == EngineVariant.BASELINE
        assert result.routing.engine == EngineVariant.ENHANCED
        assert result.fallback.preserved_state is True
        assert result.state.current_node_id == expected.state.current_node_id
        assert result.state.context == expected.state.context
        assert result.state.history == expected.state.history
        assert [o.text for o in result.outputs] == [o.text for o in expected.outputs]
        assert enhanced.metrics.get_aggregated_metrics(TENANT).fallback_count == 1

    @pytest.mark.asyncio
    async def test_fallbacks_feed_router_guard(self, registry, store, no_sleep_retry, greeting_graph):
        """Test that enhanced fallbacks show up in the live metrics the router reads."""
        processor = _enhanced_processor(registry, store, no_sleep_retry, "greeting", fail_on=range(1, 11))

        for index in range(10):
            result = await _send(processor, "hello", session_id=f"session-{index}")
            assert result.fallback is not None

        live = processor.metrics.live_metrics(TENANT, "greeting")
        assert live.enhanced_sample_size == 10
        assert live.enhanced_fallback_rate == 1.0

        comparison = processor.metrics.compare_engines(TENANT, "greeting")
        assert comparison["enhanced"].fallback_count == 10
        assert comparison["baseline"].count == 0

        router = SystemRouter(RouterConfig(min_live_samples=10))
        analysis = ComplexityAnalysis(
            template_id=greeting_graph.id,
            version=greeting_graph.version,
            score=0.9,
            risk_level=RiskLevel.HIGH,
            recommended_modules=frozenset({CapabilityTag.ENHANCED_CAPTURE}),
            signals=TemplateComplexityAnalyzer().measure(greeting_graph),
        )
        context = RoutingContext(
            tenant_id=TENANT, user_id=USER, session_id="session-11", template_id="greeting"
        )

        decision = router.route(greeting_graph, analysis, live, context)

        assert decision.engine == EngineVariant.BASELINE
        assert any("fallback rate" in reason for reason in decision.reasons)

    @pytest.mark.asyncio
    async def test_enhanced_success(self, registry, store, no_sleep_retry):
        """Test a healthy enhanced step."""
        processor = _enhanced_processor(registry, store, no_sleep_retry, "funnel", fail_on=())

        await _send(processor, "hi", template_id="funnel")
        result = await _send(processor, "not an email", template_id="funnel")

        assert result.engine_used == EngineVariant.ENHANCED
        assert result.fallback is None
        assert result.state.current_node_id == "ask_email"
        assert [o.text for o in result.outputs] == ["Please enter a valid email address."]

    @pytest.mark.asyncio
    async def test_lead_stage_once_across_fallback(self, registry, store, no_sleep_retry):
        """Test that a stage node advances the lead once even when the turn falls back."""
        client = AsyncMock()
        processor = _enhanced_processor(
            registry, store, no_sleep_retry, "funnel", fail_on={1, 2},
            dispatcher=LeadStageDispatcher(client),
        )

        await _send(processor, "hi", template_id="funnel")
        result = await _send(processor, "maria@example.com", template_id="funnel")
        await _send(processor, "thanks", template_id="funnel")
        await processor.dispatcher.drain()

        assert result.fallback.lead_data_preserved is True
        client.advance_stage.assert_awaited_once_with(USER, "qualified")


class TestFromSettings:
    """Tests for ConversationProcessor.from_settings."""

    def test_wires_from_settings(self):
        """Test building a processor from settings."""
        from convoflow_core.config import Settings

        settings = Settings(
            state_backend="memory",
            enhanced_enabled=False,
            router_confidence_threshold=0.8,
            cas_max_retries=5,
        )

        processor = ConversationProcessor.from_settings(settings)

        assert isinstance(processor.store, InMemoryStateStore)
        assert processor.router.config.enhanced_enabled is False
        assert processor.router.config.confidence_threshold == 0.8
        assert processor.cas_max_retries == 5
