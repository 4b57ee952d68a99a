"""Context state management for Attune.

This module provides:
- ContextState models (project state, user state, learning goals)
- ProcessedInput records produced by external input adapters
- Field-level last-writer-wins merging with an audit side-log
- ContextStateManager: versioned snapshots, subscriptions, persistence
"""

from .manager import ContextStateManager, Subscription, context_key
from .merge import canonical, overlaps, resolve_path, resolve_writes
from .models import (
    ActiveSession,
    AuditEntry,
    ComponentInfo,
    ConceptEvidence,
    ContextSnapshot,
    ContextState,
    ErrorCorrelation,
    ErrorKind,
    FieldStamp,
    GoalStatus,
    InputType,
    LearningGoal,
    ObservedError,
    PerformanceSample,
    ProcessedInput,
    ProjectState,
    SecurityFinding,
    UserState,
)

__all__ = [
    # Manager
    "ContextStateManager",
    "Subscription",
    "context_key",
    # Merge
    "canonical",
    "overlaps",
    "resolve_path",
    "resolve_writes",
    # Models
    "ActiveSession",
    "AuditEntry",
    "ComponentInfo",
    "ConceptEvidence",
    "ContextSnapshot",
    "ContextState",
    "ErrorCorrelation",
    "ErrorKind",
    "FieldStamp",
    "GoalStatus",
    "InputType",
    "LearningGoal",
    "ObservedError",
    "PerformanceSample",
    "ProcessedInput",
    "ProjectState",
    "SecurityFinding",
    "UserState",
]
