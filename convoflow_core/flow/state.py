"""Conversation state."""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .graph import FlowGraph


SessionKey = Tuple[str, str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_key_str(key: SessionKey) -> str:
    return ":".join(key)


@dataclass
class ConversationState:
    """
    Position of one session inside its flow.

    Owned by the interpreter for the duration of a step and persisted
    by the state store between steps. ``version`` is the store's
    optimistic-concurrency token; 0 means never persisted.
    """

    flow_id: str
    tenant_id: str
    user_id: str
    session_id: str
    current_node_id: str

    context: Dict[str, Any] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)

    started_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)

    completed: bool = False
    version: int = 0

    @classmethod
    def initial(
        cls,
        graph: FlowGraph,
        tenant_id: str,
        user_id: str,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> "ConversationState":
        """Fresh state positioned at the graph's entry node."""
        now = now or utcnow()
        return cls(
            flow_id=graph.id,
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            current_node_id=graph.entry_node_id,
            started_at=now,
            last_updated_at=now,
        )

    @property
    def key(self) -> SessionKey:
        return (self.tenant_id, self.user_id, self.session_id)

    def copy(self) -> "ConversationState":
        """Deep copy; steps never touch the caller's instance."""
        return copy.deepcopy(self)

    def fingerprint(self) -> str:
        """Content hash of position, context and history."""
        payload = json.dumps(
            {
                "flow_id": self.flow_id,
                "current_node_id": self.current_node_id,
                "context": self.context,
                "history": self.history,
                "completed": self.completed,
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "currentNodeId": self.current_node_id,
            "context": self.context,
            "history": list(self.history),
            "startedAt": self.started_at.isoformat(),
            "lastUpdatedAt": self.last_updated_at.isoformat(),
            "completed": self.completed,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(
            flow_id=data["flowId"],
            tenant_id=data["tenantId"],
            user_id=data["userId"],
            session_id=data["sessionId"],
            current_node_id=data["currentNodeId"],
            context=dict(data.get("context") or {}),
            history=list(data.get("history") or []),
            started_at=_parse_time(data.get("startedAt")),
            last_updated_at=_parse_time(data.get("lastUpdatedAt")),
            completed=bool(data.get("completed", False)),
            version=int(data.get("version", 0)),
        )


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return utcnow()
