"""Autonomous thought loop for Attune.

This module provides:
- ContextAnalyzer: read-only, time-boxed analysis of a context snapshot
- Detectors: isolated problem detectors run in a fixed order
- InterventionPlanner: dedup, rate limiting and cool-downs
- Content generators with a template fallback
- ThoughtLoop: the per-session monitor with reasoning traces
"""

from .analysis import ContextAnalyzer, find_dependency_cycles
from .detectors import (
    ArchitecturalFlawDetector,
    DetectionReport,
    Detector,
    KnowledgeGapDetector,
    LogicalErrorDetector,
    PerformanceDetector,
    SecurityDetector,
    default_detectors,
    run_detectors,
)
from .generators import (
    ContentGenerator,
    GenerationRequest,
    GenerationResult,
    LLMContentGenerator,
    TemplateGenerator,
    default_generators,
)
from .loop import ThoughtLoop
from .models import (
    Analysis,
    AnalysisStep,
    DetectionStep,
    Explanation,
    FeedbackStep,
    GenerationStep,
    Intervention,
    InterventionKind,
    InterventionStatus,
    LoopState,
    PlanningStep,
    Problem,
    ProblemType,
    ReasoningStep,
    ReasoningTrace,
    ReasoningType,
    Severity,
    UserResponse,
    problem_signature,
)
from .planner import (
    CooldownTracker,
    InterventionPlanner,
    PlanResult,
    RollingWindowLimiter,
    intervention_kind,
)

__all__ = [
    # Loop
    "ThoughtLoop",
    # Analysis
    "ContextAnalyzer",
    "find_dependency_cycles",
    # Detection
    "ArchitecturalFlawDetector",
    "DetectionReport",
    "Detector",
    "KnowledgeGapDetector",
    "LogicalErrorDetector",
    "PerformanceDetector",
    "SecurityDetector",
    "default_detectors",
    "run_detectors",
    # Planning
    "CooldownTracker",
    "InterventionPlanner",
    "PlanResult",
    "RollingWindowLimiter",
    "intervention_kind",
    # Generation
    "ContentGenerator",
    "GenerationRequest",
    "GenerationResult",
    "LLMContentGenerator",
    "TemplateGenerator",
    "default_generators",
    # Models
    "Analysis",
    "AnalysisStep",
    "DetectionStep",
    "Explanation",
    "FeedbackStep",
    "GenerationStep",
    "Intervention",
    "InterventionKind",
    "InterventionStatus",
    "LoopState",
    "PlanningStep",
    "Problem",
    "ProblemType",
    "ReasoningStep",
    "ReasoningTrace",
    "ReasoningType",
    "Severity",
    "UserResponse",
    "problem_signature",
]
