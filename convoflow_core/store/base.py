"""Conversation state store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..flow.state import ConversationState


@dataclass(frozen=True)
class SaveResult:
    """Outcome of a compare-and-swap save."""
    ok: bool
    version: int

    @property
    def version_conflict(self) -> bool:
        return not self.ok


class StateStore(ABC):
    """
    Abstraction over externally persisted conversation state.

    ``save`` is a compare-and-swap on ``expected_version``: the write
    succeeds only if the stored version still equals it (None or 0
    meaning "no record yet"). On success the state's ``version`` is
    bumped. Faults raise StorePersistenceError.
    """

    @abstractmethod
    async def load(
        self,
        tenant_id: str,
        user_id: str,
        session_id: str,
    ) -> Optional[ConversationState]:
        pass

    @abstractmethod
    async def save(
        self,
        state: ConversationState,
        expected_version: Optional[int] = None,
    ) -> SaveResult:
        pass

    @abstractmethod
    async def delete(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        pass

    async def close(self) -> None:
        pass
