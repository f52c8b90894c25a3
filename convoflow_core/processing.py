"""
Conversation Processor

Entry point for inbound messages: loads the session, routes it to an
engine, persists the new state and reports the outcome. The session
lock spans load, step and save, and the save is the last state-changing
action of a turn.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .analysis.analyzer import TemplateComplexityAnalyzer
from .analytics.base import EngineVariant
from .analytics.metrics import MetricEvent, MetricsCollector
from .config import Settings
from .core.errors import BaselineExecutionError, TransientProcessingError
from .engines.base import Engine
from .engines.baseline import BaselineEngine
from .engines.enhanced import EnhancedEngine
from .engines.modules import DynamicNavigationModule, EnhancedCaptureModule, HttpCaptureNormalizer
from .flow.graph import FlowGraph
from .flow.interpreter import FlowInterpreter, OutputMessage, StepResult
from .flow.registry import GraphRegistry
from .flow.state import ConversationState, SessionKey
from .leads.funnel import HttpLeadStageClient, LeadStageClient, LeadStageDispatcher, StageLedger
from .resilience.fallback import (
    FallbackContext,
    FallbackEngine,
    FallbackManager,
    FallbackResult,
    GuardedStep,
)
from .resilience.retry import RetryPolicy
from .routing.router import RoutingContext, RoutingDecision, SystemRouter
from .store.base import StateStore
from .store.locks import SessionLockManager
from .store.memory import InMemoryStateStore
from .store.redis_store import RedisStateStore


logger = structlog.get_logger()


@dataclass
class ProcessResult:
    """Outcome of one inbound message."""
    outputs: List[OutputMessage]
    state: ConversationState
    engine_used: EngineVariant
    degraded: bool
    routing: RoutingDecision
    fallback: Optional[FallbackResult] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outputs": [output.to_dict() for output in self.outputs],
            "state": self.state.to_dict(),
            "engineUsed": self.engine_used.value,
            "degraded": self.degraded,
            "routing": self.routing.to_dict(),
            "fallback": self.fallback.event.to_dict() if self.fallback else None,
        }


class ConversationProcessor:
    """
    Processes inbound messages against conversation templates.

    Usage:
        processor = ConversationProcessor(registry, InMemoryStateStore())
        result = await processor.process_message(
            "tenant", "user", "session", "template", "hello"
        )
    """

    def __init__(
        self,
        registry: GraphRegistry,
        store: StateStore,
        router: Optional[SystemRouter] = None,
        analyzer: Optional[TemplateComplexityAnalyzer] = None,
        metrics: Optional[MetricsCollector] = None,
        baseline: Optional[Engine] = None,
        enhanced: Optional[Engine] = None,
        dispatcher: Optional[LeadStageDispatcher] = None,
        fallback_manager: Optional[FallbackManager] = None,
        locks: Optional[SessionLockManager] = None,
        retry: Optional[RetryPolicy] = None,
        cas_max_retries: int = 3,
    ):
        self.registry = registry
        self.store = store
        self.router = router or SystemRouter()
        self.analyzer = analyzer or TemplateComplexityAnalyzer()
        self.metrics = metrics or MetricsCollector()
        self.baseline = baseline or BaselineEngine()
        self.enhanced = enhanced or EnhancedEngine()
        self.dispatcher = dispatcher or LeadStageDispatcher()
        self.fallback_manager = fallback_manager or FallbackManager(
            baseline=self.baseline,
            store=self.store,
            metrics=self.metrics,
            ledger=self.dispatcher.ledger,
        )
        self.fallback_engine = FallbackEngine(self.enhanced, self.fallback_manager)
        self.locks = locks or SessionLockManager()
        self.retry = retry or RetryPolicy()
        self.cas_max_retries = cas_max_retries

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: Optional[GraphRegistry] = None,
        store: Optional[StateStore] = None,
        lead_client: Optional[LeadStageClient] = None,
    ) -> "ConversationProcessor":
        """Wire a processor from settings."""
        if store is None:
            if settings.state_backend == "redis":
                store = RedisStateStore.from_url(
                    settings.redis_url, ttl_seconds=settings.state_ttl_seconds
                )
            else:
                store = InMemoryStateStore()

        if lead_client is None and settings.lead_service_url:
            lead_client = HttpLeadStageClient(
                settings.lead_service_url, api_key=settings.lead_service_api_key
            )

        interpreter = FlowInterpreter(settings.interpreter_config())
        normalizer = (
            HttpCaptureNormalizer(
                settings.capture_service_url,
                timeout=settings.enhanced_module_timeout_seconds,
            )
            if settings.capture_service_url else None
        )
        enhanced = EnhancedEngine(
            modules=[DynamicNavigationModule(), EnhancedCaptureModule(normalizer=normalizer)],
            interpreter=interpreter,
            module_timeout=settings.enhanced_module_timeout_seconds,
        )
        metrics = MetricsCollector(settings.metrics_config())
        baseline = BaselineEngine(interpreter)
        dispatcher = LeadStageDispatcher(lead_client, StageLedger())

        return cls(
            registry=registry or GraphRegistry(),
            store=store,
            router=SystemRouter(settings.router_config()),
            analyzer=TemplateComplexityAnalyzer(settings.analyzer_thresholds()),
            metrics=metrics,
            baseline=baseline,
            enhanced=enhanced,
            dispatcher=dispatcher,
            fallback_manager=FallbackManager(
                baseline=baseline,
                store=store,
                metrics=metrics,
                ledger=dispatcher.ledger,
                config=settings.fallback_config(),
            ),
            locks=SessionLockManager(settings.session_lock_timeout_seconds),
            retry=RetryPolicy(settings.retry_config()),
            cas_max_retries=settings.cas_max_retries,
        )

    async def process_message(
        self,
        tenant_id: str,
        user_id: str,
        session_id: str,
        template_id: str,
        message_text: Optional[str],
        prior_state: Optional[ConversationState] = None,
    ) -> ProcessResult:
        """
        Process one inbound message.

        Args:
            tenant_id: Tenant owning the template
            user_id: End user
            session_id: Conversation session
            template_id: Template to execute
            message_text: The user's message
            prior_state: State supplied by the caller instead of loading it

        Returns:
            ProcessResult

        Raises:
            UnknownTemplateError: If the template does not exist
            MalformedGraph: If the template fails validation
            BaselineExecutionError: If the baseline engine fails
            TransientProcessingError: If the store is unavailable or
                concurrent writers keep conflicting
        """
        start = time.monotonic()
        graph = await self.registry.get(template_id)
        key: SessionKey = (tenant_id, user_id, session_id)
        context = RoutingContext(
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            template_id=template_id,
        )
        log = logger.bind(tenant_id=tenant_id, session_id=session_id, template_id=template_id)

        async with self.locks.hold(key):
            for attempt in range(self.cas_max_retries):
                if attempt == 0 and prior_state is not None:
                    state = prior_state.copy()
                else:
                    state = await self.retry.execute(
                        self.store.load, *key, operation="state_load"
                    )
                state = self._reconcile(state, graph, key)

                decision = self._route(graph, context)
                try:
                    guarded = await self._execute(graph, state, message_text, key, decision, context)
                except BaselineExecutionError:
                    self._record(graph, context, decision, None, start, error=True)
                    raise

                result = guarded.result
                if state is not None and state.completed:
                    break

                expected = state.version if state is not None else 0
                saved = await self.retry.execute(
                    self.store.save, result.state, expected, operation="state_save"
                )
                if saved.ok:
                    break

                log.info("state_save_conflict", attempt=attempt + 1, stored_version=saved.version)
            else:
                raise TransientProcessingError(
                    f"Session {session_id} kept changing concurrently",
                    attempts=self.cas_max_retries,
                )

        self._record(graph, context, decision, guarded, start)
        self.dispatcher.dispatch(result.state, result.stage_transitions)

        latency_ms = (time.monotonic() - start) * 1000
        log.info(
            "message_processed",
            engine=guarded.engine_used.value,
            node_id=result.state.current_node_id,
            outputs=len(result.outputs),
            degraded=result.degraded,
            fallback=guarded.fallback is not None,
            latency_ms=round(latency_ms, 2),
        )

        return ProcessResult(
            outputs=result.outputs,
            state=result.state,
            engine_used=guarded.engine_used,
            degraded=result.degraded,
            routing=decision,
            fallback=guarded.fallback,
            latency_ms=latency_ms,
        )

    def _reconcile(
        self,
        state: Optional[ConversationState],
        graph: FlowGraph,
        key: SessionKey,
    ) -> Optional[ConversationState]:
        """Restart sessions whose position no longer exists in the template."""
        if state is None:
            return None
        if state.flow_id == graph.id and state.current_node_id in graph:
            return state

        logger.warning(
            "session_restarted_for_template",
            session_id=key[2],
            flow_id=state.flow_id,
            template_id=graph.id,
            node_id=state.current_node_id,
        )
        fresh = ConversationState.initial(graph, *key)
        fresh.version = state.version
        return fresh

    def _route(self, graph: FlowGraph, context: RoutingContext) -> RoutingDecision:
        decision = self.router.lookup(graph, context)
        if decision is not None:
            return decision

        performance = self.metrics.performance_metrics(context.tenant_id, context.template_id)
        analysis = self.analyzer.analyze(graph, performance)
        live = self.metrics.live_metrics(context.tenant_id, context.template_id)
        return self.router.route(graph, analysis, live, context)

    async def _execute(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        text: Optional[str],
        key: SessionKey,
        decision: RoutingDecision,
        context: RoutingContext,
    ) -> GuardedStep:
        if decision.engine == EngineVariant.ENHANCED:
            fallback_context = FallbackContext(
                graph=graph,
                routing=context,
                pre_state=state,
                inbound_text=text,
                decision=decision,
            )
            return await self.fallback_engine.run(fallback_context, decision.recommended_modules)

        result = await self.baseline.step(graph, state, text, session=key)
        return GuardedStep(result=result, engine_used=EngineVariant.BASELINE)

    def _record(
        self,
        graph: FlowGraph,
        context: RoutingContext,
        decision: RoutingDecision,
        guarded: Optional[GuardedStep],
        start: float,
        error: bool = False,
    ) -> None:
        result: Optional[StepResult] = guarded.result if guarded else None
        captured = result.captured if result else None
        self.metrics.record_event(
            MetricEvent(
                engine=guarded.engine_used if guarded else decision.engine,
                template_id=graph.id,
                tenant_id=context.tenant_id,
                session_id=context.session_id,
                latency_ms=(time.monotonic() - start) * 1000,
                capture_attempted=captured is not None,
                capture_success=captured is not False,
                degraded=bool(result and result.degraded),
                fallback=bool(guarded and guarded.fallback),
                error=error,
                routed_engine=decision.engine,
            )
        )

    async def reset_session(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        """Delete a session's state so the next message starts over."""
        key: SessionKey = (tenant_id, user_id, session_id)
        async with self.locks.hold(key):
            removed = await self.retry.execute(self.store.delete, *key, operation="state_delete")
        logger.info("session_reset", tenant_id=tenant_id, session_id=session_id, removed=removed)
        return removed

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.enhanced.close()
        await self.dispatcher.client.close()
        await self.store.close()
