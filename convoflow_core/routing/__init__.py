"""Engine routing."""

from .router import (
    RoutingStrategy,
    RouterConfig,
    FallbackStrategy,
    RoutingContext,
    RoutingDecision,
    SystemRouter,
    rollout_bucket,
)

__all__ = [
    "RoutingStrategy",
    "RouterConfig",
    "FallbackStrategy",
    "RoutingContext",
    "RoutingDecision",
    "SystemRouter",
    "rollout_bucket",
]
