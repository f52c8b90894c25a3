"""Engine abstraction shared by the baseline and enhanced paths."""

from abc import ABC, abstractmethod
from typing import FrozenSet, Optional

from ..analysis.analyzer import CapabilityTag
from ..analytics.base import EngineVariant
from ..flow.graph import FlowGraph
from ..flow.interpreter import StepResult
from ..flow.state import ConversationState, SessionKey


class Engine(ABC):
    """
    Executes one conversation step.

    Implementations never mutate the state they are given; the new
    state is returned in the StepResult.
    """

    variant: EngineVariant

    @abstractmethod
    async def step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        session: Optional[SessionKey] = None,
        modules: FrozenSet[CapabilityTag] = frozenset(),
    ) -> StepResult:
        pass

    async def close(self) -> None:
        pass
