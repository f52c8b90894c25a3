"""
Fallback Manager

Reverts a failed enhanced-path step to the baseline engine inside the
same request. The baseline re-execution always starts from the state
that entered the turn, never from whatever an enhanced module left
behind, so side effects are applied once.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Union

import structlog

from ..analysis.analyzer import CapabilityTag
from ..analytics.base import EngineVariant
from ..analytics.metrics import MetricsCollector
from ..core.errors import (
    BaselineExecutionError,
    EnhancedModuleError,
    EnhancedModuleTimeout,
    StorePersistenceError,
)
from ..engines.base import Engine
from ..flow.graph import FlowGraph
from ..flow.interpreter import StepResult
from ..flow.state import ConversationState, SessionKey, utcnow
from ..leads.funnel import StageLedger
from ..routing.router import RoutingContext, RoutingDecision
from ..store.base import StateStore


logger = structlog.get_logger()


class FallbackCause(str, Enum):
    """Why the enhanced path was abandoned."""
    MODULE_TIMEOUT = "module_timeout"
    MODULE_ERROR = "module_error"
    MODULE_UNAVAILABLE = "module_unavailable"
    DEGRADED_RESULT = "degraded_result"
    SESSION_LOSS = "session_loss"
    DATA_CORRUPTION = "data_corruption"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    ADMIN_OVERRIDE = "admin_override"
    UNKNOWN_ERROR = "unknown_error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryActionType(str, Enum):
    LOG_INCIDENT = "log_incident"
    PRESERVE_SESSION = "preserve_session"
    SWITCH_ENGINE = "switch_engine"
    VERIFY_LEAD_STAGE = "verify_lead_stage"


_SEVERITY: Dict[FallbackCause, Severity] = {
    FallbackCause.MODULE_TIMEOUT: Severity.MEDIUM,
    FallbackCause.MODULE_ERROR: Severity.HIGH,
    FallbackCause.MODULE_UNAVAILABLE: Severity.MEDIUM,
    FallbackCause.DEGRADED_RESULT: Severity.MEDIUM,
    FallbackCause.SESSION_LOSS: Severity.HIGH,
    FallbackCause.DATA_CORRUPTION: Severity.CRITICAL,
    FallbackCause.PERFORMANCE_DEGRADATION: Severity.LOW,
    FallbackCause.ADMIN_OVERRIDE: Severity.LOW,
    FallbackCause.UNKNOWN_ERROR: Severity.HIGH,
}

# Causes worth trying the enhanced path again on the next message
RETRYABLE_CAUSES = frozenset({
    FallbackCause.MODULE_TIMEOUT,
    FallbackCause.MODULE_UNAVAILABLE,
    FallbackCause.PERFORMANCE_DEGRADATION,
})


@dataclass
class FallbackConfig:
    """Configuration for the fallback manager."""
    enhanced_timeout_seconds: float = 5.0
    history_size: int = 1000
    verify_with_store: bool = True


@dataclass
class FallbackOptions:
    """Per-call switches for execute_fallback."""
    verify_preserved_state: bool = True
    verify_lead_stage: bool = True


@dataclass
class RecoveryAction:
    """One step taken while recovering."""
    type: RecoveryActionType
    status: str  # completed, failed, skipped
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "status": self.status, "detail": self.detail}


@dataclass
class FallbackContext:
    """Everything needed to replay a turn on the baseline engine."""
    graph: FlowGraph
    routing: RoutingContext
    pre_state: Optional[ConversationState]
    inbound_text: Optional[str]
    decision: Optional[RoutingDecision] = None

    @property
    def session_key(self) -> SessionKey:
        return (self.routing.tenant_id, self.routing.user_id, self.routing.session_id)


@dataclass
class FallbackEvent:
    """Recovery record sent to the metrics collector."""
    id: str
    tenant_id: str
    template_id: str
    session_id: str
    cause: FallbackCause
    severity: Severity
    preserved_state: bool
    lead_data_preserved: bool
    recovery_actions: List[RecoveryAction]
    error: Optional[str] = None
    failed_module: Optional[str] = None
    retryable: bool = False
    succeeded: bool = True
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "template_id": self.template_id,
            "session_id": self.session_id,
            "cause": self.cause.value,
            "severity": self.severity.value,
            "preserved_state": self.preserved_state,
            "lead_data_preserved": self.lead_data_preserved,
            "recovery_actions": [a.to_dict() for a in self.recovery_actions],
            "error": self.error,
            "failed_module": self.failed_module,
            "retryable": self.retryable,
            "succeeded": self.succeeded,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FallbackResult:
    """Outcome of a fallback."""
    success: bool
    engine_used: EngineVariant
    step_result: StepResult
    preserved_state: bool
    lead_data_preserved: bool
    event: FallbackEvent
    recovery_actions: List[RecoveryAction] = field(default_factory=list)
    duration_ms: float = 0.0


class FallbackManager:
    """
    Re-executes failed enhanced steps with the baseline engine.

    The end user never sees the enhanced failure. Only a failure of the
    baseline engine itself propagates.
    """

    def __init__(
        self,
        baseline: Engine,
        store: Optional[StateStore] = None,
        metrics: Optional[MetricsCollector] = None,
        ledger: Optional[StageLedger] = None,
        config: Optional[FallbackConfig] = None,
    ):
        self.baseline = baseline
        self.store = store
        self.metrics = metrics
        self.ledger = ledger
        self.config = config or FallbackConfig()
        self._history: Deque[FallbackEvent] = deque(maxlen=self.config.history_size)
        self._by_cause: Dict[str, int] = {}
        self._by_module: Dict[str, int] = {}
        self._succeeded = 0
        self._failed = 0

    async def execute_fallback(
        self,
        context: FallbackContext,
        cause: FallbackCause,
        error_info: Union[BaseException, str, None] = None,
        options: Optional[FallbackOptions] = None,
    ) -> FallbackResult:
        """
        Replay the turn on the baseline engine.

        Args:
            context: Graph, routing context and the pre-step state
            cause: Why the enhanced path was abandoned
            error_info: The enhanced failure, if any
            options: Verification switches

        Returns:
            FallbackResult with the baseline step result

        Raises:
            BaselineExecutionError: If the baseline engine fails too
        """
        options = options or FallbackOptions()
        start = time.monotonic()
        actions: List[RecoveryAction] = []
        error_text = str(error_info) if error_info is not None else None
        failed_module = getattr(error_info, "module", None)

        logger.warning(
            "enhanced_path_failed",
            tenant_id=context.routing.tenant_id,
            template_id=context.routing.template_id,
            session_id=context.routing.session_id,
            cause=cause.value,
            module=failed_module,
            error=error_text,
        )
        actions.append(RecoveryAction(RecoveryActionType.LOG_INCIDENT, "completed"))

        if options.verify_preserved_state and self.config.verify_with_store and self.store is not None:
            preserved, action = await self._verify_preserved(context)
        else:
            preserved = True
            action = RecoveryAction(RecoveryActionType.PRESERVE_SESSION, "skipped", "no store verification")
        actions.append(action)

        pre_state = context.pre_state.copy() if context.pre_state is not None else None
        try:
            result = await self.baseline.step(
                context.graph,
                pre_state,
                context.inbound_text,
                session=context.session_key,
            )
        except BaselineExecutionError as e:
            actions.append(RecoveryAction(RecoveryActionType.SWITCH_ENGINE, "failed", str(e)))
            event = self._event(
                context, cause, Severity.CRITICAL, preserved, False, actions,
                error_text, failed_module, start, succeeded=False,
            )
            self._emit(event)
            logger.error(
                "fallback_failed",
                tenant_id=context.routing.tenant_id,
                session_id=context.routing.session_id,
                error=str(e),
            )
            raise

        actions.append(RecoveryAction(RecoveryActionType.SWITCH_ENGINE, "completed", "baseline"))

        if options.verify_lead_stage:
            lead_ok, action = self._verify_lead_stages(context, result)
        else:
            lead_ok = True
            action = RecoveryAction(RecoveryActionType.VERIFY_LEAD_STAGE, "skipped")
        actions.append(action)

        event = self._event(
            context, cause, _SEVERITY.get(cause, Severity.HIGH), preserved, lead_ok,
            actions, error_text, failed_module, start, succeeded=True,
        )
        self._emit(event)

        logger.info(
            "fallback_executed",
            tenant_id=context.routing.tenant_id,
            session_id=context.routing.session_id,
            cause=cause.value,
            preserved_state=preserved,
            lead_data_preserved=lead_ok,
            duration_ms=round(event.duration_ms, 2),
        )

        return FallbackResult(
            success=True,
            engine_used=EngineVariant.BASELINE,
            step_result=result,
            preserved_state=preserved,
            lead_data_preserved=lead_ok,
            event=event,
            recovery_actions=actions,
            duration_ms=event.duration_ms,
        )

    async def _verify_preserved(self, context: FallbackContext):
        """Reload from the store and compare with the state that entered the turn."""
        try:
            reloaded = await self.store.load(*context.session_key)
        except StorePersistenceError as e:
            return False, RecoveryAction(RecoveryActionType.PRESERVE_SESSION, "failed", f"reload failed: {e}")

        pre = context.pre_state
        if pre is None or pre.version == 0:
            matches = reloaded is None
        else:
            matches = (
                reloaded is not None
                and reloaded.version == pre.version
                and reloaded.fingerprint() == pre.fingerprint()
            )

        if matches:
            return True, RecoveryAction(RecoveryActionType.PRESERVE_SESSION, "completed")

        logger.warning(
            "session_state_diverged",
            tenant_id=context.routing.tenant_id,
            session_id=context.routing.session_id,
            expected_version=pre.version if pre else 0,
            stored_version=reloaded.version if reloaded else None,
        )
        return False, RecoveryAction(
            RecoveryActionType.PRESERVE_SESSION, "failed", "stored state differs from turn input"
        )

    def _verify_lead_stages(self, context: FallbackContext, result: StepResult):
        """Each stage visit must appear once and not be dispatched yet."""
        transitions = result.stage_transitions
        if not transitions:
            return True, RecoveryAction(RecoveryActionType.VERIFY_LEAD_STAGE, "skipped", "no stage nodes visited")

        seen = set()
        history = result.state.history
        for transition in transitions:
            visit = (transition.history_index, transition.stage_id)
            in_history = (
                0 <= transition.history_index < len(history)
                and history[transition.history_index] == transition.node_id
            )
            already = self.ledger is not None and self.ledger.is_claimed(
                StageLedger.key_for(result.state, transition)
            )
            if visit in seen or not in_history or already:
                logger.error(
                    "lead_stage_verification_failed",
                    session_id=context.routing.session_id,
                    node_id=transition.node_id,
                    stage_id=transition.stage_id,
                )
                return False, RecoveryAction(
                    RecoveryActionType.VERIFY_LEAD_STAGE, "failed",
                    f"stage '{transition.stage_id}' not applied exactly once",
                )
            seen.add(visit)

        stages = ",".join(t.stage_id for t in transitions)
        return True, RecoveryAction(RecoveryActionType.VERIFY_LEAD_STAGE, "completed", stages)

    def _event(
        self,
        context: FallbackContext,
        cause: FallbackCause,
        severity: Severity,
        preserved: bool,
        lead_ok: bool,
        actions: List[RecoveryAction],
        error: Optional[str],
        failed_module: Optional[str],
        start: float,
        succeeded: bool,
    ) -> FallbackEvent:
        return FallbackEvent(
            id=f"fb_{uuid.uuid4().hex[:12]}",
            tenant_id=context.routing.tenant_id,
            template_id=context.routing.template_id,
            session_id=context.routing.session_id,
            cause=cause,
            severity=severity,
            preserved_state=preserved,
            lead_data_preserved=lead_ok,
            recovery_actions=list(actions),
            error=error,
            failed_module=failed_module,
            retryable=cause in RETRYABLE_CAUSES,
            succeeded=succeeded,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    def _emit(self, event: FallbackEvent) -> None:
        self._history.append(event)
        self._by_cause[event.cause.value] = self._by_cause.get(event.cause.value, 0) + 1
        if event.failed_module:
            self._by_module[event.failed_module] = self._by_module.get(event.failed_module, 0) + 1
        if event.succeeded:
            self._succeeded += 1
        else:
            self._failed += 1

        if self.metrics is not None:
            self.metrics.record_fallback(event)

    def get_history(self, limit: int = 100) -> List[FallbackEvent]:
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total": self._succeeded + self._failed,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "by_cause": dict(self._by_cause),
            "by_module": dict(self._by_module),
        }


@dataclass
class GuardedStep:
    """Result of a step that may have fallen back."""
    result: StepResult
    engine_used: EngineVariant
    fallback: Optional[FallbackResult] = None


class FallbackEngine(Engine):
    """
    Wraps an engine so its failures revert to the baseline.

    Triggers: EnhancedModuleError, EnhancedModuleTimeout, exceeding the
    overall deadline, or a degraded result.

    Usage:
        engine = FallbackEngine(EnhancedEngine(), manager)
        guarded = await engine.run(context, modules)
    """

    variant = EngineVariant.ENHANCED

    def __init__(
        self,
        primary: Engine,
        manager: FallbackManager,
        timeout_seconds: Optional[float] = None,
    ):
        self.primary = primary
        self.manager = manager
        self.timeout_seconds = timeout_seconds or manager.config.enhanced_timeout_seconds

    async def run(
        self,
        context: FallbackContext,
        modules: FrozenSet[CapabilityTag] = frozenset(),
        options: Optional[FallbackOptions] = None,
    ) -> GuardedStep:
        state_in = context.pre_state.copy() if context.pre_state is not None else None
        error: Optional[BaseException] = None

        try:
            result = await asyncio.wait_for(
                self.primary.step(
                    context.graph,
                    state_in,
                    context.inbound_text,
                    session=context.session_key,
                    modules=modules,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            cause = FallbackCause.MODULE_TIMEOUT
            error = EnhancedModuleTimeout("enhanced_engine", self.timeout_seconds, self.timeout_seconds)
        except EnhancedModuleTimeout as e:
            cause, error = FallbackCause.MODULE_TIMEOUT, e
        except EnhancedModuleError as e:
            cause, error = FallbackCause.MODULE_ERROR, e
        except Exception as e:
            cause, error = FallbackCause.UNKNOWN_ERROR, e
        else:
            if not result.degraded:
                return GuardedStep(result=result, engine_used=self.primary.variant)
            cause = FallbackCause.DEGRADED_RESULT
            error = EnhancedModuleError("interpreter", result.error or "degraded result")

        fallback = await self.manager.execute_fallback(context, cause, error, options)
        return GuardedStep(
            result=fallback.step_result,
            engine_used=fallback.engine_used,
            fallback=fallback,
        )

    async def step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        session: Optional[SessionKey] = None,
        modules: FrozenSet[CapabilityTag] = frozenset(),
    ) -> StepResult:
        key = state.key if state is not None else session
        if key is None:
            raise ValueError("session key is required to start a conversation")

        context = FallbackContext(
            graph=graph,
            routing=RoutingContext(
                tenant_id=key[0],
                user_id=key[1],
                session_id=key[2],
                template_id=graph.id,
            ),
            pre_state=state,
            inbound_text=inbound_text,
        )
        guarded = await self.run(context, modules)
        return guarded.result
