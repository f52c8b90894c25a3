"""Execution engines."""

from .base import Engine, EngineVariant
from .baseline import BaselineEngine
from .enhanced import EnhancedEngine, MODULE_ORDER
from .modules import (
    EnhancedModule,
    CaptureConfig,
    EnhancedCaptureModule,
    HttpCaptureNormalizer,
    NavigationConfig,
    DynamicNavigationModule,
    normalize_input,
    validate_input,
)

__all__ = [
    "Engine",
    "EngineVariant",
    "BaselineEngine",
    "EnhancedEngine",
    "MODULE_ORDER",
    # Modules
    "EnhancedModule",
    "CaptureConfig",
    "EnhancedCaptureModule",
    "HttpCaptureNormalizer",
    "NavigationConfig",
    "DynamicNavigationModule",
    "normalize_input",
    "validate_input",
]
