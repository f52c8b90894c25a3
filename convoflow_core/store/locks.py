"""Per-session mutual exclusion."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from ..core.errors import TransientProcessingError
from ..flow.state import SessionKey, session_key_str


logger = structlog.get_logger()


class SessionLockManager:
    """
    Serializes load -> step -> save for one (tenant, user, session) key.

    Two deliveries of the same webhook therefore never read the same
    state. Locks are created on demand and dropped once nobody holds or
    waits for them.
    """

    def __init__(self, acquire_timeout: Optional[float] = 10.0):
        self.acquire_timeout = acquire_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: SessionKey) -> AsyncIterator[None]:
        """
        Hold the lock for a session key.

        Raises:
            TransientProcessingError: If the lock is not acquired in time
        """
        name = session_key_str(key)
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        lock = self._locks[name]
        self._users[name] = self._users.get(name, 0) + 1

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                logger.warning("session_lock_timeout", session=name, timeout=self.acquire_timeout)
                raise TransientProcessingError(f"Session {name} is busy")

            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[name] -= 1
            if self._users[name] <= 0:
                del self._users[name]
                if not lock.locked():
                    self._locks.pop(name, None)

    def is_locked(self, key: SessionKey) -> bool:
        lock = self._locks.get(session_key_str(key))
        return bool(lock and lock.locked())

    @property
    def active_locks(self) -> int:
        return len(self._locks)
