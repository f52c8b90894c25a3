"""
Error taxonomy for flow execution and engine routing.

Only MalformedGraph and BaselineExecutionError are meant to reach the
HTTP boundary. Everything else is absorbed by the processing layer and
turned into a (possibly degraded) successful response.
"""

from typing import List, Optional


class ConvoflowError(Exception):
    """Base class for all convoflow errors."""


class MalformedGraph(ConvoflowError):
    """Template failed validation and cannot be activated."""

    def __init__(
        self,
        message: str,
        template_id: Optional[str] = None,
        problems: Optional[List[str]] = None,
    ):
        self.template_id = template_id
        self.problems = problems or []
        detail = message
        if self.problems:
            detail = f"{message}: {'; '.join(self.problems)}"
        super().__init__(detail)


class UnknownTemplateError(ConvoflowError):
    """No template is registered under the requested id."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Unknown template '{template_id}'")


class UnknownNodeError(ConvoflowError):
    """State points at a node that does not exist in the graph."""

    def __init__(self, node_id: str, graph_id: str):
        self.node_id = node_id
        self.graph_id = graph_id
        super().__init__(f"Node '{node_id}' not found in graph '{graph_id}'")


class PredicateEvaluationError(ConvoflowError):
    """A condition predicate could not be evaluated. Treated as no-match."""

    def __init__(self, match_type: str, value: str, reason: str):
        self.match_type = match_type
        self.value = value
        self.reason = reason
        super().__init__(f"Cannot evaluate {match_type} predicate '{value}': {reason}")


class StorePersistenceError(ConvoflowError):
    """The conversation state store failed to load or save."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"State store {operation} failed for {key}: {cause}")


class TransientProcessingError(ConvoflowError):
    """The request could not be completed now but may succeed on retry."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class EnhancedModuleError(ConvoflowError):
    """An enhanced processing module failed."""

    def __init__(self, module: str, message: str, cause: Optional[BaseException] = None):
        self.module = module
        self.cause = cause
        super().__init__(f"Enhanced module '{module}' failed: {message}")


class EnhancedModuleTimeout(EnhancedModuleError):
    """An enhanced processing module exceeded its time budget."""

    def __init__(self, module: str, timeout_seconds: float, elapsed: float = 0.0):
        self.timeout_seconds = timeout_seconds
        self.elapsed = elapsed
        super().__init__(
            module,
            f"timed out after {elapsed:.2f}s (limit: {timeout_seconds}s)",
        )


class BaselineExecutionError(ConvoflowError):
    """The baseline engine failed. No further fallback exists."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
