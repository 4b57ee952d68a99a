"""Pydantic models for the Attune context state.

- ContextState: one versioned, fused snapshot per session
- ProcessedInput: one externally-processed observation to merge into it
- AuditEntry: the losing side of a last-writer-wins resolution
- ContextSnapshot: what readers get back (state plus staleness flags)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from attune.knowledge.models import (
    ConceptCategory,
    ErrorSignal,
    MasteryEvidence,
    MasteryLevel,
    gen_id,
    utcnow,
)


# =============================================================================
# Enums
# =============================================================================


class InputType(str, Enum):
    """Kind of raw observation an input adapter processed."""

    CODE = "code"
    TEXT = "text"
    IMAGE = "image"
    LOG = "log"
    ACTIVITY = "activity"
    SYSTEM = "system"


class ErrorKind(str, Enum):
    """Kind of error an adapter observed in the user's work."""

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    LOGICAL = "logical"
    TYPE = "type"


class GoalStatus(str, Enum):
    """Status of a learning goal."""

    ACTIVE = "active"
    ACHIEVED = "achieved"
    ABANDONED = "abandoned"


FindingSeverity = Literal["low", "medium", "high", "critical"]


# =============================================================================
# Project State
# =============================================================================


class ObservedError(BaseModel):
    """An error seen in the project (from a linter, test run, log, screenshot)."""

    signature: str  # Stable grouping key, e.g. "off-by-one"
    message: str = ""
    kind: ErrorKind = ErrorKind.LOGICAL
    component: Optional[str] = None
    concepts: list[str] = Field(default_factory=list)
    occurrences: int = 1
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)


class ComponentInfo(BaseModel):
    """One architectural component and what it depends on."""

    dependencies: list[str] = Field(default_factory=list)
    size: int = 0  # Lines, nodes, whatever the adapter measures
    description: Optional[str] = None


class SecurityFinding(BaseModel):
    """A finding from an external security scanner."""

    rule: str  # "sql-injection", "hardcoded-secret"
    component: str
    severity: FindingSeverity = "medium"
    detail: str = ""
    first_seen: datetime = Field(default_factory=utcnow)


class PerformanceSample(BaseModel):
    """A measured value with its budget."""

    value: float
    budget: float
    unit: str = "ms"
    measured_at: datetime = Field(default_factory=utcnow)


class ProjectState(BaseModel):
    """What we know about the user's project."""

    name: Optional[str] = None
    language: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    files: dict[str, dict[str, Any]] = Field(default_factory=dict)
    errors: list[ObservedError] = Field(default_factory=list)
    architecture: dict[str, ComponentInfo] = Field(default_factory=dict)
    security_findings: list[SecurityFinding] = Field(default_factory=list)
    metrics: dict[str, PerformanceSample] = Field(default_factory=dict)
    extras: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# User State
# =============================================================================


class UserState(BaseModel):
    """What we know about the user right now."""

    focus: Optional[str] = None  # "fixing the pagination bug"
    activity: Optional[str] = None  # "editing", "debugging", "reading docs"
    skill_level: Optional[str] = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    knowledge: dict[str, MasteryLevel] = Field(default_factory=dict)  # Mirrored from the graph
    recent_actions: list[str] = Field(default_factory=list)


class LearningGoal(BaseModel):
    """Something the user wants to learn or build."""

    id: str = Field(default_factory=gen_id)
    title: str
    concepts: list[str] = Field(default_factory=list)
    priority: int = 0
    status: GoalStatus = GoalStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)


class ActiveSession(BaseModel):
    """Metadata about the live session."""

    started_at: datetime = Field(default_factory=utcnow)
    adapters: list[str] = Field(default_factory=list)  # Input adapters seen so far
    device: Optional[str] = None


class FieldStamp(BaseModel):
    """Who last wrote a subtree, and when."""

    timestamp: datetime
    input_id: str


class ContextState(BaseModel):
    """The authoritative fused snapshot for one session."""

    session_id: str
    user_id: str
    version: int = 0
    project_state: ProjectState = Field(default_factory=ProjectState)
    user_state: UserState = Field(default_factory=UserState)
    learning_goals: list[LearningGoal] = Field(default_factory=list)
    active_session: ActiveSession = Field(default_factory=ActiveSession)
    last_updated: datetime = Field(default_factory=utcnow)
    field_stamps: dict[str, FieldStamp] = Field(default_factory=dict)

    def goal_concepts(self) -> list[str]:
        """Concepts named by active learning goals, in goal order."""
        concepts: dict[str, None] = {}
        for goal in self.learning_goals:
            if goal.status == GoalStatus.ACTIVE:
                concepts.update(dict.fromkeys(goal.concepts))
        return list(concepts)


# =============================================================================
# Inputs
# =============================================================================


class ConceptEvidence(BaseModel):
    """Mastery evidence an adapter derived for one concept."""

    concept_id: str
    evidence: MasteryEvidence
    category: Optional[ConceptCategory] = None


class ErrorCorrelation(BaseModel):
    """An error signature attributed to concepts."""

    error: ErrorSignal
    concepts: list[str]


class ProcessedInput(BaseModel):
    """One externally-processed observation.

    ``path`` names the subtree of the context it touches, e.g.
    ``projectState.dependencies`` or ``user_state.focus``. Keys inside
    dict-valued fields follow the field name: ``project_state.files.src/app.py``.
    An input may carry only evidence, in which case ``path`` is None.
    """

    id: str = Field(default_factory=gen_id)
    session_id: str
    type: InputType
    path: Optional[str] = None
    content: Any = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None  # Adapter name
    evidence: list[ConceptEvidence] = Field(default_factory=list)
    errors: list[ErrorCorrelation] = Field(default_factory=list)


class AuditEntry(BaseModel):
    """The losing write of an overlapping update."""

    id: str = Field(default_factory=gen_id)
    session_id: str
    path: str
    losing_input_id: str
    losing_timestamp: datetime
    losing_value: Any = None
    winning_input_id: str
    winning_timestamp: datetime
    recorded_at: datetime = Field(default_factory=utcnow)


class ContextSnapshot(BaseModel):
    """A read-only copy of the current state plus freshness flags."""

    state: ContextState
    stale: bool = False  # Older than the TTL, or a merge was still in flight
    in_flight: bool = False  # A merge did not finish within the read wait

    @property
    def version(self) -> int:
        return self.state.version
