"""Conversation state persistence."""

from .base import SaveResult, StateStore
from .memory import InMemoryStateStore
from .redis_store import RedisStateStore
from .locks import SessionLockManager

__all__ = [
    "SaveResult",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "SessionLockManager",
]
