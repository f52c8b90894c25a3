"""Lead-stage progression for sales funnel nodes."""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Iterable, List, Optional, Set, Tuple

import httpx
import structlog

from ..flow.interpreter import StageTransition
from ..flow.state import ConversationState


logger = structlog.get_logger()


VisitKey = Tuple[str, str, str, str, int, str]


class LeadStageClient(ABC):
    """The external lead system. It is authoritative for lead stages."""

    @abstractmethod
    async def advance_stage(self, lead_id: str, stage_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


class NullLeadStageClient(LeadStageClient):
    """Client used when no lead system is configured."""

    async def advance_stage(self, lead_id: str, stage_id: str) -> None:
        logger.debug("lead_stage_ignored", lead_id=lead_id, stage_id=stage_id)


class HttpLeadStageClient(LeadStageClient):
    """Advances lead stages through the lead service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def advance_stage(self, lead_id: str, stage_id: str) -> None:
        response = await self._client.post(
            f"{self.base_url}/leads/{lead_id}/stage",
            json={"stageId": stage_id},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class StageLedger:
    """
    Remembers which (session, history position, stage) visits were
    dispatched, so a visit never advances a lead twice. Keys include the
    conversation start time so a reset session starts with a clean slate.
    """

    def __init__(self, max_entries: int = 50000):
        self.max_entries = max_entries
        self._entries: "OrderedDict[VisitKey, None]" = OrderedDict()

    @staticmethod
    def key_for(state: ConversationState, transition: StageTransition) -> VisitKey:
        return (
            state.tenant_id,
            state.user_id,
            state.session_id,
            state.started_at.isoformat(),
            transition.history_index,
            transition.stage_id,
        )

    def claim(self, key: VisitKey) -> bool:
        """Mark a visit as dispatched. False if it already was."""
        if key in self._entries:
            return False
        self._entries[key] = None
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    def is_claimed(self, key: VisitKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def lead_id_for(state: ConversationState) -> str:
    """Lead id from the conversation context, falling back to the user id."""
    lead_id = state.context.get("lead_id") or state.context.get("leadId")
    return str(lead_id) if lead_id else state.user_id


class LeadStageDispatcher:
    """
    Fire-and-forget dispatch of lead-stage advances.

    Failures are logged and never reach the conversation.
    """

    def __init__(
        self,
        client: Optional[LeadStageClient] = None,
        ledger: Optional[StageLedger] = None,
    ):
        self.client = client or NullLeadStageClient()
        self.ledger = ledger or StageLedger()
        self._tasks: Set["asyncio.Task[None]"] = set()

    def dispatch(
        self,
        state: ConversationState,
        transitions: Iterable[StageTransition],
    ) -> List["asyncio.Task[None]"]:
        """Schedule one advance per newly visited stage node."""
        tasks = []
        lead_id = lead_id_for(state)

        for transition in transitions:
            key = StageLedger.key_for(state, transition)
            if not self.ledger.claim(key):
                logger.info(
                    "lead_stage_duplicate_skipped",
                    session_id=state.session_id,
                    node_id=transition.node_id,
                    stage_id=transition.stage_id,
                )
                continue

            task = asyncio.create_task(self._advance(lead_id, transition, state.session_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)

        return tasks

    async def _advance(self, lead_id: str, transition: StageTransition, session_id: str) -> None:
        try:
            await self.client.advance_stage(lead_id, transition.stage_id)
            logger.info(
                "lead_stage_advanced",
                lead_id=lead_id,
                stage_id=transition.stage_id,
                node_id=transition.node_id,
                session_id=session_id,
            )
        except Exception as e:
            logger.error(
                "lead_stage_advance_failed",
                lead_id=lead_id,
                stage_id=transition.stage_id,
                session_id=session_id,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight advances."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
