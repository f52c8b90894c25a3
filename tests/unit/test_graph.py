"""Unit tests for the flow graph model."""

import pytest

from convoflow_core.core.errors import MalformedGraph, PredicateEvaluationError
from convoflow_core.flow.graph import (
    FlowGraph,
    MatchType,
    NodeKind,
    Predicate,
    render_placeholders,
)


class TestTemplateLoading:
    """Tests for FlowGraph.from_template."""

    def test_load_valid_template(self, greeting_template):
        """Test loading a valid template."""
        graph = FlowGraph.from_template(greeting_template, template_id="greeting", version="3")

        assert graph.id == "greeting"
        assert graph.version == "3"
        assert graph.entry_node_id == "start"
        assert len(graph) == 3
        assert "ask_name" in graph
        assert graph.get_node("ask_name").kind == NodeKind.INPUT
        assert graph.get_node("ask_name").variable_name == "name"
        assert graph.successors("start") == ["ask_name"]

    def test_builder_type_aliases(self):
        """Test that builder node type names are accepted."""
        graph = FlowGraph.from_template({
            "entryNodeId": "s",
            "nodes": [
                {"id": "s", "type": "startNode", "content": "hi", "next": "c"},
                {"id": "c", "type": "capture", "next": "e"},
                {"id": "e", "type": "end"},
            ],
        })

        assert graph.get_node("s").kind == NodeKind.MESSAGE
        assert graph.get_node("c").kind == NodeKind.INPUT
        assert graph.get_node("c").variable_name == "c"
        assert graph.get_node("e").kind == NodeKind.TERMINAL

    def test_condition_branches_and_default(self, branching_graph):
        """Test parsing condition predicates and default successor."""
        node = branching_graph.get_node("ask")

        assert node.kind == NodeKind.CONDITION
        assert [b.next_node_id for b in node.branches] == ["A", "B"]
        assert node.branches[0].predicate.match_type == MatchType.CONTAINS
        assert node.default_next_node_id == "C"

    def test_content_object_with_buttons(self):
        """Test rich content with media and buttons."""
        graph = FlowGraph.from_template({
            "entryNodeId": "m",
            "nodes": [
                {
                    "id": "m",
                    "type": "message",
                    "content": {"text": "Pick one", "media": "https://img", "buttons": ["A", "B"]},
                },
            ],
        })

        node = graph.get_node("m")
        assert node.content == "Pick one"
        assert node.media == "https://img"
        assert node.buttons == ("A", "B")

    def test_mutations_parsed(self):
        """Test set, unset and increment declarations."""
        graph = FlowGraph.from_template({
            "entryNodeId": "a",
            "nodes": [
                {
                    "id": "a",
                    "type": "action",
                    "set": {"plan": "pro"},
                    "unset": ["coupon"],
                    "increment": {"visits": 1},
                },
            ],
        })

        ops = [(m.op, m.name) for m in graph.get_node("a").mutations]
        assert ops == [("set", "plan"), ("unset", "coupon"), ("increment", "visits")]

    def test_sales_stage_from_metadata(self, funnel_graph):
        """Test reading the lead stage of a node."""
        assert funnel_graph.get_node("qualified").sales_stage_id == "qualified"
        assert funnel_graph.get_node("start").sales_stage_id is None

    def test_graph_is_immutable(self, greeting_graph):
        """Test that the node mapping cannot be modified."""
        with pytest.raises(TypeError):
            greeting_graph.nodes["extra"] = greeting_graph.get_node("start")

    def test_loop_back_cycles_allowed(self):
        """Test that graphs may reference earlier nodes."""
        graph = FlowGraph.from_template({
            "entryNodeId": "ask",
            "nodes": [
                {
                    "id": "ask",
                    "type": "condition",
                    "next": [
                        {"condition": {"type": "equals", "value": "ok"}, "nextNodeId": "done"},
                        {"condition": {"type": "default"}, "nextNodeId": "retry"},
                    ],
                },
                {"id": "retry", "type": "message", "content": "Again", "next": "ask"},
                {"id": "done", "type": "terminal"},
            ],
        })

        assert graph.successors("retry") == ["ask"]

    def test_to_dict_reloads(self, branching_graph):
        """Test that serialized graphs load back to the same structure."""
        reloaded = FlowGraph.from_template(branching_graph.to_dict())

        assert reloaded.id == branching_graph.id
        assert reloaded.get_node("ask").branches == branching_graph.get_node("ask").branches
        assert reloaded.get_node("ask").default_next_node_id == "C"


class TestTemplateValidation:
    """Tests for MalformedGraph detection."""

    def test_unknown_successor(self):
        """Test a node pointing at a missing node."""
        with pytest.raises(MalformedGraph) as exc_info:
            FlowGraph.from_template({
                "entryNodeId": "a",
                "nodes": [{"id": "a", "type": "message", "next": "missing"}],
            }, template_id="bad")

        assert exc_info.value.template_id == "bad"
        assert any("missing" in p for p in exc_info.value.problems)

    def test_missing_entry(self):
        """Test an entry node id that does not resolve."""
        with pytest.raises(MalformedGraph) as exc_info:
            FlowGraph.from_template({
                "entryNodeId": "nope",
                "nodes": [{"id": "a", "type": "terminal"}],
            })

        assert any("entryNodeId" in p for p in exc_info.value.problems)

    def test_duplicate_ids(self):
        """Test duplicate node ids."""
        with pytest.raises(MalformedGraph) as exc_info:
            FlowGraph.from_template({
                "entryNodeId": "a",
                "nodes": [
                    {"id": "a", "type": "terminal"},
                    {"id": "a", "type": "terminal"},
                ],
            })

        assert any("duplicate" in p for p in exc_info.value.problems)

    def test_condition_without_predicates(self):
        """Test a condition node with nothing to evaluate."""
        with pytest.raises(MalformedGraph):
            FlowGraph.from_template({
                "entryNodeId": "c",
                "nodes": [{"id": "c", "type": "condition"}],
            })

    def test_terminal_with_successor(self):
        """Test a terminal node that declares a successor."""
        with pytest.raises(MalformedGraph):
            FlowGraph.from_template({
                "entryNodeId": "a",
                "nodes": [
                    {"id": "a", "type": "terminal", "next": "b"},
                    {"id": "b", "type": "terminal"},
                ],
            })

    def test_unknown_node_type(self):
        """Test an unsupported node type."""
        with pytest.raises(MalformedGraph) as exc_info:
            FlowGraph.from_template({
                "entryNodeId": "a",
                "nodes": [{"id": "a", "type": "teleport"}],
            })

        assert "teleport" in str(exc_info.value)

    def test_empty_template(self):
        """Test a template without nodes."""
        with pytest.raises(MalformedGraph):
            FlowGraph.from_template({"entryNodeId": "a", "nodes": []})

    def test_all_problems_reported(self):
        """Test that every problem is collected, not just the first."""
        with pytest.raises(MalformedGraph) as exc_info:
            FlowGraph.from_template({
                "entryNodeId": "x",
                "nodes": [
                    {"id": "a", "type": "message", "next": "missing"},
                    {"id": "b", "type": "condition"},
                ],
            })

        assert len(exc_info.value.problems) == 3


class TestPredicate:
    """Tests for Predicate evaluation."""

    def test_contains_case_insensitive(self):
        """Test contains ignores case by default."""
        assert Predicate(MatchType.CONTAINS, "yes").matches("Yes please")

    def test_contains_case_sensitive(self):
        """Test contains honours case_sensitive."""
        assert not Predicate(MatchType.CONTAINS, "yes", case_sensitive=True).matches("Yes please")

    def test_equals_exact(self):
        """Test equals matches the whole text, ignoring case only."""
        assert Predicate(MatchType.EQUALS, "Option 1").matches("option 1")
        assert not Predicate(MatchType.EQUALS, "Option 1").matches("  option 1 ")
        assert not Predicate(MatchType.EQUALS, "Option 1", case_sensitive=True).matches("option 1")
        assert not Predicate(MatchType.EQUALS, "option").matches("option 1")

    def test_regex(self):
        """Test regex search."""
        predicate = Predicate(MatchType.REGEX, r"^\d{5}$")

        assert predicate.matches("12345")
        assert not predicate.matches("1234a")

    def test_invalid_regex_raises(self):
        """Test that an uncompilable pattern raises PredicateEvaluationError."""
        with pytest.raises(PredicateEvaluationError):
            Predicate(MatchType.REGEX, "([unclosed").matches("text")

    def test_context_predicates(self):
        """Test predicates over the conversation context."""
        context = {"plan": "Pro", "email": ""}

        assert Predicate(MatchType.CONTEXT_HAS, "plan").matches("", context)
        assert not Predicate(MatchType.CONTEXT_HAS, "email").matches("", context)
        assert Predicate(MatchType.CONTEXT_VALUE, "plan=pro").matches("", context)
        assert not Predicate(MatchType.CONTEXT_VALUE, "plan=free").matches("", context)


class TestPlaceholders:
    """Tests for placeholder rendering."""

    def test_both_placeholder_styles(self):
        """Test {var} and {{var}} substitution."""
        text = render_placeholders("Hi {name}, plan {{ plan }}", {"name": "Maria", "plan": "pro"})

        assert text == "Hi Maria, plan pro"

    def test_unknown_placeholder_kept(self):
        """Test that unknown placeholders stay in the text."""
        assert render_placeholders("Hi {name}", {}) == "Hi {name}"
