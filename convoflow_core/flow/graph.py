"""Flow graph model: nodes, predicates and template loading."""

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..core.errors import MalformedGraph, PredicateEvaluationError


class NodeKind(str, Enum):
    """Kinds of flow nodes."""
    MESSAGE = "message"
    CONDITION = "condition"
    INPUT = "input"
    ACTION = "action"
    TERMINAL = "terminal"

    @property
    def is_blocking(self) -> bool:
        """Whether the node waits for an inbound message."""
        return self in (NodeKind.CONDITION, NodeKind.INPUT)


# Type names emitted by the visual builder and older templates
_KIND_ALIASES: Dict[str, NodeKind] = {
    "message": NodeKind.MESSAGE,
    "messagenode": NodeKind.MESSAGE,
    "start": NodeKind.MESSAGE,
    "startnode": NodeKind.MESSAGE,
    "buttons": NodeKind.MESSAGE,
    "condition": NodeKind.CONDITION,
    "conditionnode": NodeKind.CONDITION,
    "input": NodeKind.INPUT,
    "inputnode": NodeKind.INPUT,
    "capture": NodeKind.INPUT,
    "action": NodeKind.ACTION,
    "actionnode": NodeKind.ACTION,
    "terminal": NodeKind.TERMINAL,
    "end": NodeKind.TERMINAL,
    "endnode": NodeKind.TERMINAL,
}


class MatchType(str, Enum):
    """Predicate match strategies."""
    CONTAINS = "contains"
    EQUALS = "equals"
    REGEX = "regex"
    CONTEXT_HAS = "context_has"
    CONTEXT_VALUE = "context_value"


_DEFAULT_CONDITION = "default"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")


def render_placeholders(text: str, context: Mapping[str, Any]) -> str:
    """Fill {var} and {{var}} placeholders; unknown names are left as-is."""
    if not text:
        return ""

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        if context.get(name) is not None:
            return str(context[name])
        return match.group(0)

    return _PLACEHOLDER.sub(replace, text)


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int) -> "re.Pattern[str]":
    return re.compile(pattern, flags)


@dataclass(frozen=True)
class Predicate:
    """A single condition test against the inbound text."""
    match_type: MatchType
    value: str
    case_sensitive: bool = False

    def matches(self, text: Optional[str], context: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Evaluate the predicate.

        Raises:
            PredicateEvaluationError: If the predicate cannot be evaluated
        """
        text = text or ""
        context = context or {}

        if self.match_type == MatchType.CONTAINS:
            return self._fold(self.value) in self._fold(text)

        if self.match_type == MatchType.EQUALS:
            return self._fold(text) == self._fold(self.value)

        if self.match_type == MatchType.REGEX:
            flags = 0 if self.case_sensitive else re.IGNORECASE
            try:
                pattern = _compile(self.value, flags)
            except re.error as e:
                raise PredicateEvaluationError(self.match_type.value, self.value, str(e))
            return pattern.search(text) is not None

        if self.match_type == MatchType.CONTEXT_HAS:
            return context.get(self.value) not in (None, "")

        if self.match_type == MatchType.CONTEXT_VALUE:
            name, sep, expected = self.value.partition("=")
            if not sep:
                raise PredicateEvaluationError(
                    self.match_type.value, self.value, "expected 'variable=value'"
                )
            actual = context.get(name.strip())
            if actual is None:
                return False
            return self._fold(str(actual)) == self._fold(expected.strip())

        raise PredicateEvaluationError(str(self.match_type), self.value, "unsupported match type")

    def _fold(self, value: str) -> str:
        return value if self.case_sensitive else value.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.match_type.value,
            "value": self.value,
            "caseSensitive": self.case_sensitive,
        }


@dataclass(frozen=True)
class ConditionBranch:
    """A predicate and the node it leads to."""
    predicate: Predicate
    next_node_id: str


@dataclass(frozen=True)
class ContextMutation:
    """A context change applied when a message or action node runs."""
    op: str  # set, unset, increment
    name: str
    value: Any = None


@dataclass(frozen=True)
class FlowNode:
    """
    A node in the conversation flow.

    Nodes reference each other by id only, so graphs may contain
    loop-back cycles.
    """

    id: str
    kind: NodeKind
    content: str = ""
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    # MESSAGE / ACTION / INPUT
    next_node_id: Optional[str] = None

    # CONDITION
    branches: Tuple[ConditionBranch, ...] = ()
    default_next_node_id: Optional[str] = None

    # INPUT
    variable_name: Optional[str] = None
    input_type: Optional[str] = None
    validation: Optional[Mapping[str, Any]] = None

    # MESSAGE / ACTION
    mutations: Tuple[ContextMutation, ...] = ()

    # Rich output
    media: Optional[str] = None
    buttons: Tuple[str, ...] = ()

    @property
    def is_blocking(self) -> bool:
        return self.kind.is_blocking

    @property
    def sales_stage_id(self) -> Optional[str]:
        """Lead stage this node advances to, if any."""
        stage = self.metadata.get("salesStageId") or self.metadata.get("sales_stage_id")
        return str(stage) if stage else None

    def successors(self) -> List[str]:
        """All node ids this node can transition to."""
        targets: List[str] = []
        if self.next_node_id:
            targets.append(self.next_node_id)
        targets.extend(branch.next_node_id for branch in self.branches)
        if self.default_next_node_id:
            targets.append(self.default_next_node_id)
        return targets

    def render_content(self, context: Mapping[str, Any]) -> str:
        """Content with {var} and {{var}} placeholders filled from context."""
        return render_placeholders(self.content, context)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.kind.value,
            "content": self.content,
            "metadata": dict(self.metadata),
        }
        if self.branches or self.default_next_node_id:
            conditions = [
                {"condition": b.predicate.to_dict(), "nextNodeId": b.next_node_id}
                for b in self.branches
            ]
            if self.default_next_node_id:
                conditions.append({
                    "condition": {"type": _DEFAULT_CONDITION},
                    "nextNodeId": self.default_next_node_id,
                })
            data["next"] = conditions
        elif self.next_node_id:
            data["next"] = self.next_node_id
        if self.variable_name:
            data["variableName"] = self.variable_name
        if self.input_type:
            data["inputType"] = self.input_type
        if self.validation:
            data["validation"] = dict(self.validation)
        if self.mutations:
            data["actions"] = [
                {"op": m.op, "name": m.name, "value": m.value} for m in self.mutations
            ]
        if self.media:
            data["media"] = self.media
        if self.buttons:
            data["buttons"] = list(self.buttons)
        return data


@dataclass(frozen=True)
class FlowGraph:
    """
    Immutable, validated conversation template.

    Safe to share between concurrent interpreter invocations.
    """

    id: str
    version: str
    entry_node_id: str
    nodes: Mapping[str, FlowNode]
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        return self.nodes.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __iter__(self) -> Iterator[FlowNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def successors(self, node_id: str) -> List[str]:
        node = self.nodes.get(node_id)
        return node.successors() if node else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "tenantId": self.tenant_id,
            "name": self.name,
            "entryNodeId": self.entry_node_id,
            "metadata": dict(self.metadata),
            "nodes": [node.to_dict() for node in self.nodes.values()],
        }

    @classmethod
    def from_template(
        cls,
        data: Mapping[str, Any],
        template_id: Optional[str] = None,
        version: Optional[str] = None,
    ) -> "FlowGraph":
        """
        Build and validate a graph from its ingestion format.

        Args:
            data: ``{nodes: [...], entryNodeId}`` document
            template_id: Overrides ``data["id"]``
            version: Overrides ``data["version"]``

        Raises:
            MalformedGraph: If the template fails validation
        """
        graph_id = str(template_id or data.get("id") or "")
        problems: List[str] = []

        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, list) or not raw_nodes:
            raise MalformedGraph("Template has no nodes", graph_id, ["nodes must be a non-empty list"])

        nodes: Dict[str, FlowNode] = {}
        for index, raw in enumerate(raw_nodes):
            if not isinstance(raw, Mapping):
                problems.append(f"node #{index} is not an object")
                continue
            node_id = raw.get("id")
            if not node_id or not isinstance(node_id, str):
                problems.append(f"node #{index} has no id")
                continue
            if node_id in nodes:
                problems.append(f"duplicate node id '{node_id}'")
                continue
            try:
                nodes[node_id] = _parse_node(node_id, raw)
            except ValueError as e:
                problems.append(f"node '{node_id}': {e}")

        entry = data.get("entryNodeId") or data.get("entry_node_id")
        if not entry:
            problems.append("entryNodeId is missing")
        elif entry not in nodes:
            problems.append(f"entryNodeId '{entry}' does not resolve")

        for node in nodes.values():
            problems.extend(_check_node(node, nodes))

        if problems:
            raise MalformedGraph("Template failed validation", graph_id, problems)

        return cls(
            id=graph_id,
            version=str(version or data.get("version") or "1"),
            entry_node_id=str(entry),
            nodes=MappingProxyType(nodes),
            tenant_id=data.get("tenantId") or data.get("tenant_id"),
            name=data.get("name"),
            metadata=MappingProxyType(dict(data.get("metadata") or {})),
        )


def _check_node(node: FlowNode, nodes: Mapping[str, FlowNode]) -> List[str]:
    problems = []

    for target in node.successors():
        if target not in nodes:
            problems.append(f"node '{node.id}' points to unknown node '{target}'")

    if node.kind == NodeKind.CONDITION:
        if not node.branches and not node.default_next_node_id:
            problems.append(f"condition node '{node.id}' has no predicates and no default")
    elif node.kind == NodeKind.TERMINAL:
        if node.successors():
            problems.append(f"terminal node '{node.id}' declares successors")
    elif node.branches:
        problems.append(f"{node.kind.value} node '{node.id}' declares predicates")

    return problems


def _parse_node(node_id: str, raw: Mapping[str, Any]) -> FlowNode:
    type_name = str(raw.get("type") or "").strip().lower()
    kind = _KIND_ALIASES.get(type_name)
    if kind is None:
        raise ValueError(f"unknown node type '{raw.get('type')}'")

    metadata = dict(raw.get("metadata") or {})
    text, media, buttons = _parse_content(raw.get("content"))
    media = raw.get("media") or media
    buttons = tuple(raw.get("buttons") or buttons)

    next_node_id: Optional[str] = None
    branches: List[ConditionBranch] = []
    default_next = raw.get("defaultNext") or raw.get("default_next")

    next_value = raw.get("next")
    if isinstance(next_value, str):
        next_node_id = next_value or None
    elif isinstance(next_value, list):
        for entry in next_value:
            branch, is_default = _parse_branch(entry)
            if is_default:
                if default_next and default_next != branch.next_node_id:
                    raise ValueError("more than one default successor")
                default_next = branch.next_node_id
            else:
                branches.append(branch)
    elif next_value is not None:
        raise ValueError("'next' must be a node id or a list of conditions")

    # Non-condition nodes may express their single successor as a default entry
    if kind != NodeKind.CONDITION and default_next and not next_node_id and not branches:
        next_node_id, default_next = default_next, None

    variable_name = None
    if kind == NodeKind.INPUT:
        variable_name = (
            raw.get("variableName")
            or raw.get("variable")
            or metadata.get("variableName")
            or node_id
        )

    return FlowNode(
        id=node_id,
        kind=kind,
        content=text,
        metadata=MappingProxyType(metadata),
        next_node_id=next_node_id,
        branches=tuple(branches),
        default_next_node_id=default_next,
        variable_name=variable_name,
        input_type=raw.get("inputType") or metadata.get("inputType"),
        validation=_freeze(raw.get("validation") or metadata.get("validation")),
        mutations=_parse_mutations(raw),
        media=media,
        buttons=buttons,
    )


def _parse_content(content: Any) -> Tuple[str, Optional[str], Tuple[str, ...]]:
    if content is None:
        return "", None, ()
    if isinstance(content, str):
        return content, None, ()
    if isinstance(content, Mapping):
        text = content.get("text") or content.get("message") or ""
        return str(text), content.get("media"), tuple(content.get("buttons") or ())
    raise ValueError("content must be a string or an object")


def _parse_branch(entry: Any) -> Tuple[ConditionBranch, bool]:
    if not isinstance(entry, Mapping):
        raise ValueError("condition entries must be objects")

    target = entry.get("nextNodeId") or entry.get("next_node_id")
    if not target:
        raise ValueError("condition entry without nextNodeId")

    condition = entry.get("condition") or {}
    if not isinstance(condition, Mapping):
        raise ValueError("condition must be an object")

    type_name = str(condition.get("type") or condition.get("matchType") or "").lower()
    if type_name == _DEFAULT_CONDITION:
        return ConditionBranch(Predicate(MatchType.EQUALS, ""), target), True

    try:
        match_type = MatchType(type_name)
    except ValueError:
        raise ValueError(f"unknown match type '{type_name}'")

    predicate = Predicate(
        match_type=match_type,
        value=str(condition.get("value", "")),
        case_sensitive=bool(condition.get("caseSensitive", False)),
    )
    return ConditionBranch(predicate, target), False


def _parse_mutations(raw: Mapping[str, Any]) -> Tuple[ContextMutation, ...]:
    mutations: List[ContextMutation] = []

    assignments = raw.get("set")
    if assignments is not None:
        if not isinstance(assignments, Mapping):
            raise ValueError("'set' must be a mapping")
        mutations.extend(ContextMutation("set", k, v) for k, v in assignments.items())

    removals = raw.get("unset")
    if removals is not None:
        if not isinstance(removals, list):
            raise ValueError("'unset' must be a list")
        mutations.extend(ContextMutation("unset", str(name)) for name in removals)

    increments = raw.get("increment")
    if increments is not None:
        if not isinstance(increments, Mapping):
            raise ValueError("'increment' must be a mapping")
        mutations.extend(ContextMutation("increment", k, v) for k, v in increments.items())

    for action in raw.get("actions") or []:
        if not isinstance(action, Mapping) or action.get("op") not in ("set", "unset", "increment"):
            raise ValueError(f"invalid action {action!r}")
        mutations.append(ContextMutation(action["op"], str(action["name"]), action.get("value")))

    return tuple(mutations)


def _freeze(value: Any) -> Optional[Mapping[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError("validation must be an object")
    return MappingProxyType(dict(value))
