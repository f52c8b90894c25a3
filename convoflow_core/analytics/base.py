"""Shared analytics enums."""

from enum import Enum


class EngineVariant(str, Enum):
    """Which execution path handled a message."""
    BASELINE = "baseline"
    ENHANCED = "enhanced"
