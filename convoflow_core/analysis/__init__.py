"""Template complexity analysis."""

from .analyzer import (
    RiskLevel,
    CapabilityTag,
    AnalyzerThresholds,
    PerformanceMetrics,
    StructuralSignals,
    ComplexityAnalysis,
    TemplateComplexityAnalyzer,
)

__all__ = [
    "RiskLevel",
    "CapabilityTag",
    "AnalyzerThresholds",
    "PerformanceMetrics",
    "StructuralSignals",
    "ComplexityAnalysis",
    "TemplateComplexityAnalyzer",
]
