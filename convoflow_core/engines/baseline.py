"""Baseline engine: the plain flow interpreter."""

from typing import FrozenSet, Optional

import structlog

from ..analysis.analyzer import CapabilityTag
from ..core.errors import BaselineExecutionError
from ..flow.graph import FlowGraph
from ..flow.interpreter import FlowInterpreter, StepResult
from ..flow.state import ConversationState, SessionKey
from .base import Engine, EngineVariant


logger = structlog.get_logger()


class BaselineEngine(Engine):
    """
    Always-available execution path.

    Node-level failures come back as degraded results. Anything that
    escapes the interpreter is fatal for the request.
    """

    variant = EngineVariant.BASELINE

    def __init__(self, interpreter: Optional[FlowInterpreter] = None):
        self.interpreter = interpreter or FlowInterpreter()

    async def step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        session: Optional[SessionKey] = None,
        modules: FrozenSet[CapabilityTag] = frozenset(),
    ) -> StepResult:
        try:
            return self.interpreter.step(graph, state, inbound_text, session=session)
        except Exception as e:
            logger.error(
                "baseline_step_failed",
                flow_id=graph.id,
                node_id=state.current_node_id if state else None,
                error=str(e),
                exc_info=True,
            )
            raise BaselineExecutionError(f"Baseline step failed: {e}", cause=e) from e
