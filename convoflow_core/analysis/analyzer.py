"""
Template Complexity Analyzer

Inspects a flow graph, and optionally the template's observed
performance, to estimate how likely the baseline interpreter is to
struggle with it. The result drives engine routing.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from ..flow.graph import FlowGraph, NodeKind


class RiskLevel(str, Enum):
    """Risk of running a template on the baseline engine."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CapabilityTag(str, Enum):
    """Enhanced processing capabilities."""
    ENHANCED_CAPTURE = "enhanced_capture"
    DYNAMIC_NAVIGATION = "dynamic_navigation"


@dataclass
class AnalyzerThresholds:
    """Thresholds for scoring and module recommendation."""

    # Score -> risk level
    medium_risk: float = 0.25
    high_risk: float = 0.5
    critical_risk: float = 0.75

    # Normalizers for structural signals
    max_nodes: int = 30
    max_input_fraction: float = 0.4
    max_branching: float = 4.0
    max_chain_length: int = 10

    # Module recommendation
    sequential_inputs: int = 3
    branching_factor: float = 3.0
    chain_length: int = 8

    # Performance
    min_capture_success_rate: float = 0.8
    max_drop_rate: float = 0.2
    max_error_rate: float = 0.1
    max_response_ms: float = 2000.0
    performance_weight: float = 0.3


@dataclass
class PerformanceMetrics:
    """Historical performance of a template, supplied externally."""
    capture_success_rate: Optional[float] = None
    drop_rate: Optional[float] = None
    error_rate: Optional[float] = None
    average_response_ms: Optional[float] = None
    sample_size: int = 0


@dataclass
class StructuralSignals:
    """Graph shape measurements."""
    node_count: int
    input_count: int
    condition_count: int
    blocking_input_fraction: float
    branching_factor: float
    max_chain_length: int
    max_sequential_inputs: int
    has_cycles: bool
    has_lead_stages: bool
    uses_variables: bool

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ComplexityAnalysis:
    """Analyzer verdict for one template version."""
    template_id: str
    version: str
    score: float
    risk_level: RiskLevel
    recommended_modules: FrozenSet[CapabilityTag]
    signals: StructuralSignals
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "version": self.version,
            "score": round(self.score, 4),
            "risk_level": self.risk_level.value,
            "recommended_modules": sorted(m.value for m in self.recommended_modules),
            "signals": self.signals.to_dict(),
            "issues": list(self.issues),
        }


# Structural component weights (sum to 1)
_WEIGHTS = {
    "size": 0.25,
    "inputs": 0.25,
    "branching": 0.2,
    "depth": 0.2,
    "cycles": 0.1,
}


def _clip(value: float) -> float:
    return max(0.0, min(1.0, value))


class TemplateComplexityAnalyzer:
    """
    Scores templates by structural complexity and observed performance.

    Stateless: ``analyze`` is a pure function of its arguments and may be
    called concurrently.
    """

    def __init__(self, thresholds: Optional[AnalyzerThresholds] = None):
        self.thresholds = thresholds or AnalyzerThresholds()

    def analyze(
        self,
        graph: FlowGraph,
        performance: Optional[PerformanceMetrics] = None,
    ) -> ComplexityAnalysis:
        t = self.thresholds
        signals = self.measure(graph)
        issues: List[str] = []

        structural = (
            _WEIGHTS["size"] * _clip(signals.node_count / t.max_nodes)
            + _WEIGHTS["inputs"] * _clip(signals.blocking_input_fraction / t.max_input_fraction)
            + _WEIGHTS["branching"] * _clip(signals.branching_factor / t.max_branching)
            + _WEIGHTS["depth"] * _clip(signals.max_chain_length / t.max_chain_length)
            + _WEIGHTS["cycles"] * (1.0 if signals.has_cycles else 0.0)
        )

        modules: Set[CapabilityTag] = set()

        if signals.max_sequential_inputs >= t.sequential_inputs:
            modules.add(CapabilityTag.ENHANCED_CAPTURE)
            issues.append(
                f"{signals.max_sequential_inputs} sequential blocking inputs"
            )
        if signals.has_cycles:
            modules.add(CapabilityTag.DYNAMIC_NAVIGATION)
            issues.append("graph contains loop-back cycles")
        if signals.branching_factor >= t.branching_factor:
            modules.add(CapabilityTag.DYNAMIC_NAVIGATION)
            issues.append(f"high branching factor ({signals.branching_factor:.1f})")
        if signals.max_chain_length >= t.chain_length:
            modules.add(CapabilityTag.DYNAMIC_NAVIGATION)
            issues.append(f"long navigation chain ({signals.max_chain_length} nodes)")

        score = structural
        degraded_performance = False

        if performance is not None:
            perf_score, perf_issues = self._score_performance(performance, modules)
            if perf_score is not None:
                score = (1 - t.performance_weight) * structural + t.performance_weight * perf_score
            issues.extend(perf_issues)
            degraded_performance = bool(perf_issues)

        score = _clip(score)
        risk = self._risk_for(score)

        # Observed problems never leave a template at low risk
        if degraded_performance and risk == RiskLevel.LOW:
            risk = RiskLevel.MEDIUM

        return ComplexityAnalysis(
            template_id=graph.id,
            version=graph.version,
            score=score,
            risk_level=risk,
            recommended_modules=frozenset(modules),
            signals=signals,
            issues=issues,
        )

    def _score_performance(
        self,
        performance: PerformanceMetrics,
        modules: Set[CapabilityTag],
    ) -> Tuple[Optional[float], List[str]]:
        t = self.thresholds
        components: List[float] = []
        issues: List[str] = []

        rate = performance.capture_success_rate
        if rate is not None:
            components.append(_clip(1.0 - rate))
            if rate < t.min_capture_success_rate:
                modules.add(CapabilityTag.ENHANCED_CAPTURE)
                issues.append(f"capture success rate {rate:.0%} below {t.min_capture_success_rate:.0%}")

        if performance.drop_rate is not None:
            components.append(_clip(performance.drop_rate / t.max_drop_rate / 2))
            if performance.drop_rate > t.max_drop_rate:
                modules.add(CapabilityTag.DYNAMIC_NAVIGATION)
                issues.append(f"session drop rate {performance.drop_rate:.0%}")

        if performance.error_rate is not None:
            components.append(_clip(performance.error_rate / t.max_error_rate / 2))
            if performance.error_rate > t.max_error_rate:
                issues.append(f"error rate {performance.error_rate:.0%}")

        if performance.average_response_ms is not None:
            components.append(_clip(performance.average_response_ms / t.max_response_ms / 2))
            if performance.average_response_ms > t.max_response_ms:
                issues.append(f"average response {performance.average_response_ms:.0f}ms")

        if not components:
            return None, issues
        return sum(components) / len(components), issues

    def _risk_for(self, score: float) -> RiskLevel:
        t = self.thresholds
        if score >= t.critical_risk:
            return RiskLevel.CRITICAL
        if score >= t.high_risk:
            return RiskLevel.HIGH
        if score >= t.medium_risk:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def measure(self, graph: FlowGraph) -> StructuralSignals:
        """Compute structural signals for a graph."""
        nodes = list(graph)
        node_count = len(nodes)
        inputs = [n for n in nodes if n.kind == NodeKind.INPUT]
        conditions = [n for n in nodes if n.kind == NodeKind.CONDITION]

        branching = 0.0
        if conditions:
            branching = sum(len(n.branches) for n in conditions) / len(conditions)

        postorder, back_edges = _depth_first(graph)

        chain: Dict[str, int] = {}
        run: Dict[str, int] = {}
        for node_id in postorder:
            node = graph.nodes[node_id]
            children = [
                c for c in dict.fromkeys(node.successors())
                if (node_id, c) not in back_edges and c in chain
            ]
            chain[node_id] = 1 + max((chain[c] for c in children), default=0)

            if node.kind in (NodeKind.CONDITION, NodeKind.TERMINAL):
                run[node_id] = 0
            else:
                run[node_id] = (1 if node.kind == NodeKind.INPUT else 0) + max(
                    (run[c] for c in children), default=0
                )

        uses_variables = bool(inputs) or any(
            n.mutations or ("{" in n.content and "}" in n.content) for n in nodes
        )

        return StructuralSignals(
            node_count=node_count,
            input_count=len(inputs),
            condition_count=len(conditions),
            blocking_input_fraction=len(inputs) / node_count if node_count else 0.0,
            branching_factor=branching,
            max_chain_length=max(chain.values(), default=0),
            max_sequential_inputs=max(run.values(), default=0),
            has_cycles=bool(back_edges),
            has_lead_stages=any(n.sales_stage_id for n in nodes),
            uses_variables=uses_variables,
        )


def _depth_first(graph: FlowGraph) -> Tuple[List[str], Set[Tuple[str, str]]]:
    """Iterative DFS from the entry. Returns postorder and back edges."""
    on_stack: Set[str] = set()
    done: Set[str] = set()
    back_edges: Set[Tuple[str, str]] = set()
    postorder: List[str] = []

    entry = graph.entry_node_id
    stack = [(entry, iter(dict.fromkeys(graph.successors(entry))))]
    on_stack.add(entry)

    while stack:
        node_id, children = stack[-1]
        for child in children:
            if child in on_stack:
                back_edges.add((node_id, child))
            elif child not in done:
                on_stack.add(child)
                stack.append((child, iter(dict.fromkeys(graph.successors(child)))))
                break
        else:
            stack.pop()
            on_stack.discard(node_id)
            done.add(node_id)
            postorder.append(node_id)

    return postorder, back_edges
