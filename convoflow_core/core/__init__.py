"""Shared primitives: errors and logging."""

from .errors import (
    ConvoflowError,
    MalformedGraph,
    UnknownTemplateError,
    UnknownNodeError,
    PredicateEvaluationError,
    StorePersistenceError,
    TransientProcessingError,
    EnhancedModuleError,
    EnhancedModuleTimeout,
    BaselineExecutionError,
)
from .logging import configure_logging, get_logger

__all__ = [
    # Errors
    "ConvoflowError",
    "MalformedGraph",
    "UnknownTemplateError",
    "UnknownNodeError",
    "PredicateEvaluationError",
    "StorePersistenceError",
    "TransientProcessingError",
    "EnhancedModuleError",
    "EnhancedModuleTimeout",
    "BaselineExecutionError",
    # Logging
    "configure_logging",
    "get_logger",
]
