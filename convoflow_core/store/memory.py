"""In-memory state store."""

import asyncio
import copy
from typing import Any, Dict, Optional

import structlog

from ..flow.state import ConversationState, session_key_str
from .base import SaveResult, StateStore


logger = structlog.get_logger()


class InMemoryStateStore(StateStore):
    """
    Process-local store with compare-and-swap semantics.

    Documents are kept serialized so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(
        self,
        tenant_id: str,
        user_id: str,
        session_id: str,
    ) -> Optional[ConversationState]:
        record = self._records.get(session_key_str((tenant_id, user_id, session_id)))
        if record is None:
            return None
        return ConversationState.from_dict(copy.deepcopy(record))

    async def save(
        self,
        state: ConversationState,
        expected_version: Optional[int] = None,
    ) -> SaveResult:
        expected = state.version if expected_version is None else expected_version
        name = session_key_str(state.key)

        async with self._lock:
            current = self._records.get(name)
            current_version = current["version"] if current else 0

            if current_version != expected:
                logger.info(
                    "state_version_conflict",
                    session=name,
                    expected=expected,
                    actual=current_version,
                )
                return SaveResult(ok=False, version=current_version)

            new_version = current_version + 1
            record = copy.deepcopy(state.to_dict())
            record["version"] = new_version
            self._records[name] = record

        state.version = new_version
        return SaveResult(ok=True, version=new_version)

    async def delete(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        async with self._lock:
            return self._records.pop(session_key_str((tenant_id, user_id, session_id)), None) is not None

    def __len__(self) -> int:
        return len(self._records)
