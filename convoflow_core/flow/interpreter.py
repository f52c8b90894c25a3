"""Flow interpreter: executes one conversation step against a graph."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..core.errors import PredicateEvaluationError, UnknownNodeError
from .graph import FlowGraph, FlowNode, NodeKind, render_placeholders
from .state import ConversationState, SessionKey, utcnow


logger = structlog.get_logger()


@dataclass
class InterpreterConfig:
    """Configuration for the flow interpreter."""
    max_chain_steps: int = 100  # Max nodes executed per inbound message


@dataclass
class OutputMessage:
    """A message produced for the end user."""
    text: str
    media: Optional[str] = None
    buttons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"text": self.text}
        if self.media:
            data["media"] = self.media
        if self.buttons:
            data["buttons"] = list(self.buttons)
        return data


@dataclass(frozen=True)
class StageTransition:
    """A lead-stage node entered at a given history position."""
    node_id: str
    stage_id: str
    history_index: int


@dataclass
class StepResult:
    """Outcome of a single interpreter step."""
    outputs: List[OutputMessage]
    state: ConversationState
    degraded: bool = False
    error: Optional[str] = None

    # Nodes entered during this step, in order
    visited: List[str] = field(default_factory=list)
    stage_transitions: List[StageTransition] = field(default_factory=list)

    # None when no input node consumed text this step
    captured: Optional[bool] = None

    @property
    def completed(self) -> bool:
        return self.state.completed

    @property
    def texts(self) -> List[str]:
        return [output.text for output in self.outputs]


class FlowInterpreter:
    """
    Executes conversation graphs one inbound message at a time.

    ``step`` is synchronous and works on a copy of the given state, so
    the same (state, text) pair always produces the same result.
    """

    def __init__(
        self,
        config: Optional[InterpreterConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or InterpreterConfig()
        self._clock = clock or utcnow

    def step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        session: Optional[SessionKey] = None,
    ) -> StepResult:
        """
        Execute one step.

        Args:
            graph: Validated flow graph
            state: Current state, or None to start a new conversation
            inbound_text: The user's message
            session: (tenant_id, user_id, session_id) when state is None

        Returns:
            StepResult with outputs and the new state

        Raises:
            UnknownNodeError: If the state points outside the graph
        """
        now = self._clock()

        if state is None:
            if session is None:
                raise ValueError("session key is required to start a conversation")
            working = ConversationState.initial(graph, *session, now=now)
        else:
            working = state.copy()

        result = StepResult(outputs=[], state=working)

        if working.completed:
            logger.debug(
                "step_on_completed_session",
                flow_id=graph.id,
                session_id=working.session_id,
            )
            return result

        node = graph.get_node(working.current_node_id)
        if node is None:
            raise UnknownNodeError(working.current_node_id, graph.id)

        if not working.history:
            # First contact: the entry node is entered, the message only starts the flow
            if self._arrive(node, working, result):
                working.last_updated_at = now
                return result
            self._run(graph, node, working, None, result)
        else:
            self._run(graph, node, working, inbound_text, result)

        working.last_updated_at = now
        return result

    def advance(
        self,
        graph: FlowGraph,
        state: ConversationState,
        node_id: str,
    ) -> StepResult:
        """
        Jump to a node and chain from it without consuming input.

        Raises:
            UnknownNodeError: If node_id is not part of the graph
        """
        node = graph.get_node(node_id)
        if node is None:
            raise UnknownNodeError(node_id, graph.id)

        working = state.copy()
        working.completed = False
        result = StepResult(outputs=[], state=working)

        if not self._arrive(node, working, result):
            self._run(graph, node, working, None, result)

        working.last_updated_at = self._clock()
        return result

    def _run(
        self,
        graph: FlowGraph,
        node: FlowNode,
        working: ConversationState,
        inbound_text: Optional[str],
        result: StepResult,
    ) -> None:
        """Execute from node until a blocking or terminal node is reached."""
        steps = 0
        text = inbound_text

        while True:
            steps += 1
            if steps > self.config.max_chain_steps:
                self._degrade(result, node, "max chain steps exceeded")
                return

            try:
                next_id = self._execute(node, working, text, result)
            except Exception as e:
                self._degrade(result, node, f"{type(e).__name__}: {e}")
                return

            # Only the node current at the start of the step sees the text
            text = None

            if next_id is None:
                return

            node = graph.nodes[next_id]
            if self._arrive(node, working, result):
                return

    def _arrive(self, node: FlowNode, working: ConversationState, result: StepResult) -> bool:
        """
        Enter a node. Returns True when execution must stop here.

        Blocking nodes emit their prompt and wait; terminal nodes emit
        their content and close the conversation.
        """
        working.current_node_id = node.id
        working.history.append(node.id)
        result.visited.append(node.id)

        if node.sales_stage_id:
            result.stage_transitions.append(
                StageTransition(node.id, node.sales_stage_id, len(working.history) - 1)
            )

        if node.is_blocking:
            self._emit(node, working, result)
            return True

        if node.kind == NodeKind.TERMINAL:
            self._emit(node, working, result)
            working.completed = True
            logger.info(
                "flow_completed",
                flow_id=working.flow_id,
                session_id=working.session_id,
                node_id=node.id,
            )
            return True

        return False

    def _execute(
        self,
        node: FlowNode,
        working: ConversationState,
        text: Optional[str],
        result: StepResult,
    ) -> Optional[str]:
        """Execute the current node. Returns the next node id, or None to stop."""
        if node.kind in (NodeKind.MESSAGE, NodeKind.ACTION):
            return self._execute_message(node, working, result)
        elif node.kind == NodeKind.INPUT:
            return self._execute_input(node, working, text, result)
        elif node.kind == NodeKind.CONDITION:
            return self._execute_condition(node, working, text, result)
        elif node.kind == NodeKind.TERMINAL:
            working.completed = True
            return None
        raise ValueError(f"Unhandled node kind: {node.kind}")

    def _execute_message(
        self,
        node: FlowNode,
        working: ConversationState,
        result: StepResult,
    ) -> Optional[str]:
        context = apply_mutations(node, working.context)
        rendered = render_placeholders(node.content, context)

        working.context = context
        if rendered or node.media:
            result.outputs.append(
                OutputMessage(text=rendered, media=node.media, buttons=list(node.buttons))
            )

        if node.next_node_id is None:
            working.completed = True
            return None
        return node.next_node_id

    def _execute_input(
        self,
        node: FlowNode,
        working: ConversationState,
        text: Optional[str],
        result: StepResult,
    ) -> Optional[str]:
        if text is None:
            return None

        working.context[node.variable_name or node.id] = text
        result.captured = True

        logger.debug(
            "input_captured",
            session_id=working.session_id,
            node_id=node.id,
            variable=node.variable_name,
        )

        if node.next_node_id is None:
            working.completed = True
            return None
        return node.next_node_id

    def _execute_condition(
        self,
        node: FlowNode,
        working: ConversationState,
        text: Optional[str],
        result: StepResult,
    ) -> Optional[str]:
        if text is None:
            return None

        for branch in node.branches:
            try:
                if branch.predicate.matches(text, working.context):
                    return branch.next_node_id
            except PredicateEvaluationError as e:
                logger.warning(
                    "predicate_evaluation_failed",
                    session_id=working.session_id,
                    node_id=node.id,
                    error=str(e),
                )

        if node.default_next_node_id:
            return node.default_next_node_id

        # No match and no default: stay and re-prompt
        logger.info(
            "condition_no_match",
            session_id=working.session_id,
            node_id=node.id,
        )
        self._emit(node, working, result)
        return None

    def _emit(self, node: FlowNode, working: ConversationState, result: StepResult) -> None:
        rendered = node.render_content(working.context)
        if rendered or node.media:
            result.outputs.append(
                OutputMessage(text=rendered, media=node.media, buttons=list(node.buttons))
            )

    def _degrade(self, result: StepResult, node: FlowNode, error: str) -> None:
        result.degraded = True
        result.error = error
        logger.warning(
            "node_execution_failed",
            flow_id=result.state.flow_id,
            session_id=result.state.session_id,
            node_id=node.id,
            error=error,
        )


def apply_mutations(node: FlowNode, context: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new context with the node's mutations applied."""
    if not node.mutations:
        return dict(context)

    updated = dict(context)
    for mutation in node.mutations:
        if mutation.op == "set":
            value = mutation.value
            if isinstance(value, str):
                value = render_placeholders(value, updated)
            updated[mutation.name] = value
        elif mutation.op == "unset":
            updated.pop(mutation.name, None)
        elif mutation.op == "increment":
            amount = 1 if mutation.value is None else mutation.value
            updated[mutation.name] = updated.get(mutation.name, 0) + amount
    return updated
