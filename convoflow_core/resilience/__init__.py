"""
Resilience primitives.

The fallback manager lives in ``convoflow_core.resilience.fallback`` and
is imported from there directly, since it depends on the engine and
routing packages.
"""

from .retry import RetryConfig, RetryPolicy, RetryStats
from .timeout import TimeoutManager, TimeoutStats

__all__ = [
    "RetryConfig",
    "RetryPolicy",
    "RetryStats",
    "TimeoutManager",
    "TimeoutStats",
]
