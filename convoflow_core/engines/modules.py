"""
Enhanced Processing Modules

Optional capabilities layered on the interpreter contract. A module may
short-circuit a step by returning its own StepResult from
``before_step``; it never persists anything itself.
"""

import re
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from ..analysis.analyzer import CapabilityTag
from ..core.errors import EnhancedModuleError
from ..flow.graph import FlowGraph, FlowNode, NodeKind
from ..flow.interpreter import FlowInterpreter, OutputMessage, StepResult
from ..flow.state import ConversationState


logger = structlog.get_logger()


class EnhancedModule(ABC):
    """Base class for enhanced processing modules."""

    tag: CapabilityTag

    async def before_step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        interpreter: FlowInterpreter,
    ) -> Optional[StepResult]:
        """Return a StepResult to replace the interpreter step, or None."""
        return None

    async def after_step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        result: StepResult,
    ) -> None:
        """Inspect the step result."""
        return None

    async def close(self) -> None:
        pass


# =============================================================================
# Enhanced capture
# =============================================================================


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{7,15}$")
PHONE_SEPARATORS = re.compile(r"[\s\-\(\)\.]")


@dataclass
class CaptureConfig:
    """Configuration for enhanced capture."""
    max_attempts: int = 3  # After this many rejections the raw input is accepted
    attempts_key: str = "_capture_attempts"
    messages: Dict[str, str] = field(default_factory=lambda: {
        "email": "Please enter a valid email address.",
        "phone": "Please enter a valid phone number.",
        "number": "Please enter a number.",
        "name": "Please enter your name using letters only.",
        "pattern": "That doesn't look right, please try again.",
    })


def normalize_input(input_type: Optional[str], value: str) -> str:
    """Canonical form of a captured value."""
    value = " ".join(value.split())
    if input_type == "email":
        return value.lower()
    if input_type == "phone":
        return PHONE_SEPARATORS.sub("", value)
    if input_type == "name":
        return value.title()
    return value


def validate_input(
    input_type: Optional[str],
    value: str,
    validation: Optional[Mapping[str, Any]] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Validate a normalized value.

    Returns:
        (valid, reason) where reason names the failed check
    """
    if not value:
        return False, input_type or "pattern"

    if input_type == "email" and not EMAIL_PATTERN.match(value):
        return False, "email"
    if input_type == "phone" and not PHONE_PATTERN.match(PHONE_SEPARATORS.sub("", value)):
        return False, "phone"
    if input_type == "number":
        try:
            float(value.replace(",", "."))
        except ValueError:
            return False, "number"
    if input_type == "name":
        if len(value) < 2 or not all(ch.isalpha() or ch.isspace() for ch in value):
            return False, "name"

    if validation and validation.get("pattern"):
        try:
            if not re.search(validation["pattern"], value):
                return False, "pattern"
        except re.error:
            logger.warning("invalid_validation_pattern", pattern=validation["pattern"])

    return True, None


class HttpCaptureNormalizer:
    """
    Client for an external capture normalization service.

    POST {base_url}/normalize with {inputType, value, nodeId}; the
    service answers {value, valid, message?}.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def normalize(self, node: FlowNode, value: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}/normalize",
                json={"inputType": node.input_type, "value": value, "nodeId": node.id},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise EnhancedModuleError(CapabilityTag.ENHANCED_CAPTURE.value, f"normalizer call failed: {e}", cause=e)

    async def close(self) -> None:
        await self._client.aclose()


class EnhancedCaptureModule(EnhancedModule):
    """
    Validates and normalizes answers to input nodes.

    Invalid answers keep the session on the node and re-prompt with a
    validation message instead of storing garbage in the context.
    """

    tag = CapabilityTag.ENHANCED_CAPTURE

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        normalizer: Optional[HttpCaptureNormalizer] = None,
    ):
        self.config = config or CaptureConfig()
        self.normalizer = normalizer

    async def before_step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        interpreter: FlowInterpreter,
    ) -> Optional[StepResult]:
        if state is None or state.completed or inbound_text is None:
            return None

        node = graph.get_node(state.current_node_id)
        if node is None or node.kind != NodeKind.INPUT:
            return None
        if not node.input_type and not node.validation:
            return None

        value = normalize_input(node.input_type, inbound_text)
        valid, reason = validate_input(node.input_type, value, node.validation)
        message = None

        if self.normalizer is not None and valid:
            answer = await self.normalizer.normalize(node, value)
            value = str(answer.get("value", value))
            valid = bool(answer.get("valid", True))
            message = answer.get("message")
            reason = reason or "pattern"

        attempts = dict(state.context.get(self.config.attempts_key) or {})

        if not valid:
            count = attempts.get(node.id, 0) + 1
            if count < self.config.max_attempts:
                logger.info(
                    "capture_rejected",
                    session_id=state.session_id,
                    node_id=node.id,
                    input_type=node.input_type,
                    attempt=count,
                )
                return self._reprompt(node, state, reason, message, attempts, count)

            logger.info("capture_accepted_after_retries", session_id=state.session_id, node_id=node.id)
            value = inbound_text.strip()

        working = state.copy()
        attempts.pop(node.id, None)
        if attempts:
            working.context[self.config.attempts_key] = attempts
        else:
            working.context.pop(self.config.attempts_key, None)

        return interpreter.step(graph, working, value)

    async def close(self) -> None:
        if self.normalizer is not None:
            await self.normalizer.close()

    def _reprompt(
        self,
        node: FlowNode,
        state: ConversationState,
        reason: Optional[str],
        message: Optional[str],
        attempts: Dict[str, int],
        count: int,
    ) -> StepResult:
        working = state.copy()
        attempts[node.id] = count
        working.context[self.config.attempts_key] = attempts

        text = (
            message
            or (node.validation or {}).get("message")
            or self.config.messages.get(reason or "pattern")
            or self.config.messages["pattern"]
        )
        return StepResult(
            outputs=[OutputMessage(text=text, buttons=list(node.buttons))],
            state=working,
            captured=False,
        )


# =============================================================================
# Dynamic navigation
# =============================================================================


BACK = "back"
RESTART = "restart"

DEFAULT_KEYWORDS: Dict[str, str] = {
    "back": BACK,
    "go back": BACK,
    "menu": RESTART,
    "main menu": RESTART,
    "restart": RESTART,
    "start over": RESTART,
}


@dataclass
class NavigationConfig:
    """Configuration for dynamic navigation."""
    keywords: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_KEYWORDS))
    loop_window: int = 10  # History entries inspected for loops
    max_visits_in_window: int = 2
    history_warning: int = 50


class DynamicNavigationModule(EnhancedModule):
    """
    Lets users jump back or restart with keywords.

    Templates may add their own keywords under
    ``metadata.navigation.keywords``, mapping a phrase to ``back``,
    ``restart`` or a node id.
    """

    tag = CapabilityTag.DYNAMIC_NAVIGATION

    def __init__(self, config: Optional[NavigationConfig] = None):
        self.config = config or NavigationConfig()

    def keywords_for(self, graph: FlowGraph) -> Dict[str, str]:
        keywords = dict(self.config.keywords)
        navigation = graph.metadata.get("navigation") or {}
        for phrase, target in (navigation.get("keywords") or {}).items():
            keywords[str(phrase).strip().lower()] = str(target)
        return keywords

    async def before_step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        interpreter: FlowInterpreter,
    ) -> Optional[StepResult]:
        if state is None or state.completed or not inbound_text:
            return None

        phrase = " ".join(inbound_text.lower().split()).strip(" .!?")
        action = self.keywords_for(graph).get(phrase)
        if action is None:
            return None

        target = self.resolve_target(graph, state, action)
        if target is None:
            return None

        if self.is_circular(state, target):
            logger.warning(
                "circular_navigation_blocked",
                session_id=state.session_id,
                target=target,
            )
            return None

        logger.info(
            "dynamic_navigation",
            session_id=state.session_id,
            from_node=state.current_node_id,
            to_node=target,
            keyword=phrase,
        )
        return interpreter.advance(graph, state, target)

    def resolve_target(
        self,
        graph: FlowGraph,
        state: ConversationState,
        action: str,
    ) -> Optional[str]:
        """
        Node to navigate to.

        Raises:
            EnhancedModuleError: If an explicit target does not exist
        """
        if action == RESTART:
            return graph.entry_node_id

        if action == BACK:
            # Most recent blocking node before the current visit
            for node_id in reversed(state.history[:-1]):
                node = graph.get_node(node_id)
                if node is not None and node.is_blocking and node_id != state.current_node_id:
                    return node_id
            return None

        if action not in graph:
            raise EnhancedModuleError(
                self.tag.value,
                f"navigation target '{action}' does not exist",
            )
        return action

    def is_circular(self, state: ConversationState, target: str) -> bool:
        recent = state.history[-self.config.loop_window:]
        return recent.count(target) > self.config.max_visits_in_window

    async def after_step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        result: StepResult,
    ) -> None:
        if len(result.state.history) > self.config.history_warning:
            logger.info(
                "long_navigation_history",
                session_id=result.state.session_id,
                history_length=len(result.state.history),
            )
