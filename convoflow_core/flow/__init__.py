"""Conversation flow graphs, state and interpreter."""

from .graph import (
    NodeKind,
    MatchType,
    Predicate,
    ConditionBranch,
    ContextMutation,
    FlowNode,
    FlowGraph,
    render_placeholders,
)
from .state import ConversationState, SessionKey
from .interpreter import (
    InterpreterConfig,
    OutputMessage,
    StageTransition,
    StepResult,
    FlowInterpreter,
)
from .registry import (
    TemplateSource,
    InMemoryTemplateSource,
    GraphRegistry,
    template_version,
)

__all__ = [
    # Graph
    "NodeKind",
    "MatchType",
    "Predicate",
    "ConditionBranch",
    "ContextMutation",
    "FlowNode",
    "FlowGraph",
    "render_placeholders",
    # State
    "ConversationState",
    "SessionKey",
    # Interpreter
    "InterpreterConfig",
    "OutputMessage",
    "StageTransition",
    "StepResult",
    "FlowInterpreter",
    # Registry
    "TemplateSource",
    "InMemoryTemplateSource",
    "GraphRegistry",
    "template_version",
]
