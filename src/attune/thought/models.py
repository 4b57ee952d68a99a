"""Pydantic models for the autonomous thought loop.

- Analysis: what one pass over a snapshot found (no side effects)
- Problem: a detected issue, deduplicated by signature
- Intervention: a planned/delivered response to a problem
- ReasoningTrace: append-only record of one decision, with tagged steps
"""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from attune.context.models import (
    ComponentInfo,
    ObservedError,
    PerformanceSample,
    SecurityFinding,
)
from attune.core.errors import InvalidTransition
from attune.knowledge.models import MasteryLevel, gen_id, utcnow


# =============================================================================
# Enums
# =============================================================================


class LoopState(str, Enum):
    """Where a session's thought loop is."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    DETECTING = "detecting"
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"


class ProblemType(str, Enum):
    """Kinds of problems the detectors look for."""

    LOGICAL_ERROR = "logical_error"
    ARCHITECTURAL_FLAW = "architectural_flaw"
    SECURITY = "security"
    KNOWLEDGE_GAP = "knowledge_gap"
    PERFORMANCE = "performance"


class Severity(str, Enum):
    """Ordered severity: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Position in the order; compare severities by rank, not by value."""
        return _SEVERITY_RANK[self]

    def escalate(self) -> "Severity":
        """One step more severe, capped at critical."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(_SEVERITY_ORDER)}


class InterventionKind(str, Enum):
    """What kind of payload an intervention carries."""

    LESSON = "lesson"  # Content generator
    DIAGRAM = "diagram"  # Diagram generator
    CODE_FIX = "code_fix"  # Code generator
    HINT = "hint"  # Short text, template only


class InterventionStatus(str, Enum):
    """Intervention lifecycle.

    planned -> queued -> delivered -> accepted | dismissed | expired.
    Planned or queued interventions can be discarded when monitoring stops.
    """

    PLANNED = "planned"
    QUEUED = "queued"
    DELIVERED = "delivered"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    EXPIRED = "expired"
    DISCARDED = "discarded"


class UserResponse(str, Enum):
    """How the user reacted to a delivered intervention."""

    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


class ReasoningType(str, Enum):
    """Closed set of reasoning step shapes."""

    ANALYSIS = "analysis"
    DETECTION = "detection"
    PLANNING = "planning"
    GENERATION = "generation"
    FEEDBACK = "feedback"


# =============================================================================
# Analysis
# =============================================================================


class Analysis(BaseModel):
    """Everything one analysis pass extracted from a snapshot."""

    session_id: str
    snapshot_version: int
    errors: list[ObservedError] = Field(default_factory=list)
    architecture: dict[str, ComponentInfo] = Field(default_factory=dict)
    dependency_cycles: list[list[str]] = Field(default_factory=list)
    coupled_components: dict[str, int] = Field(default_factory=dict)  # name -> dependency count
    security_findings: list[SecurityFinding] = Field(default_factory=list)
    slow_components: dict[str, PerformanceSample] = Field(default_factory=dict)
    knowledge_gaps: list[str] = Field(default_factory=list)  # Prerequisites first
    gap_goals: dict[str, list[str]] = Field(default_factory=dict)  # gap -> goal titles
    confused_concepts: list[str] = Field(default_factory=list)
    masteries: dict[str, MasteryLevel] = Field(default_factory=dict)
    completed_steps: list[str] = Field(default_factory=list)
    incomplete: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Problems and interventions
# =============================================================================


def problem_signature(
    problem_type: ProblemType,
    affected_components: set[str] | list[str],
    root_cause: str,
) -> str:
    """Stable key for deduplication: (type, affected components, root cause)."""
    raw = "|".join([problem_type.value, ",".join(sorted(affected_components)), root_cause])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


class Problem(BaseModel):
    """A detected problem. Recomputed every cycle."""

    id: str = Field(default_factory=gen_id)
    type: ProblemType
    severity: Severity
    description: str
    affected_components: set[str] = Field(default_factory=set)
    suggested_actions: list[str] = Field(default_factory=list)
    root_cause: str
    source_snapshot_version: int
    first_seen: datetime = Field(default_factory=utcnow)  # Age of the root cause
    concepts: list[str] = Field(default_factory=list)
    detector: Optional[str] = None

    @property
    def signature(self) -> str:
        return problem_signature(self.type, self.affected_components, self.root_cause)


_TRANSITIONS: dict[InterventionStatus, set[InterventionStatus]] = {
    InterventionStatus.PLANNED: {InterventionStatus.QUEUED, InterventionStatus.DISCARDED},
    InterventionStatus.QUEUED: {InterventionStatus.DELIVERED, InterventionStatus.DISCARDED},
    InterventionStatus.DELIVERED: {
        InterventionStatus.ACCEPTED,
        InterventionStatus.DISMISSED,
        InterventionStatus.EXPIRED,
    },
    InterventionStatus.ACCEPTED: set(),
    InterventionStatus.DISMISSED: set(),
    InterventionStatus.EXPIRED: set(),
    InterventionStatus.DISCARDED: set(),
}


class Intervention(BaseModel):
    """A response to a problem, moving through a fixed lifecycle.

    Once delivered, only the user response (and the resulting terminal
    status) may change.
    """

    id: str = Field(default_factory=gen_id)
    session_id: str
    problem: Problem
    signature: str
    kind: InterventionKind
    status: InterventionStatus = InterventionStatus.PLANNED
    payload: dict[str, Any] = Field(default_factory=dict)
    generation_confidence: Optional[float] = None
    fallback_used: bool = False
    scheduled_at: datetime = Field(default_factory=utcnow)
    queued_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    user_response: Optional[UserResponse] = None
    trace_id: Optional[str] = None
    revision: int = 0  # Bumped on every transition, used as storage version

    @property
    def problem_ref(self) -> str:
        return self.problem.id

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    @property
    def is_pending(self) -> bool:
        """Not yet delivered (planned or queued)."""
        return self.status in (InterventionStatus.PLANNED, InterventionStatus.QUEUED)

    def _move(self, target: InterventionStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, target.value)
        self.status = target
        self.revision += 1

    def merge_problem(self, problem: Problem) -> None:
        """Fold a re-detected problem into this pending intervention."""
        if not self.is_pending:
            raise InvalidTransition(self.id, self.status.value, "merge")
        first_seen = min(self.problem.first_seen, problem.first_seen)
        severity = max(self.problem.severity, problem.severity, key=lambda s: s.rank)
        self.problem = problem.model_copy(update={
            "id": self.problem.id,
            "first_seen": first_seen,
            "severity": severity,
        })

    def queue(self, now: datetime) -> None:
        self._move(InterventionStatus.QUEUED)
        self.queued_at = now

    def deliver(
        self,
        payload: dict[str, Any],
        confidence: float,
        fallback_used: bool,
        trace_id: str,
        now: datetime,
    ) -> None:
        self._move(InterventionStatus.DELIVERED)
        self.payload = payload
        self.generation_confidence = confidence
        self.fallback_used = fallback_used
        self.trace_id = trace_id
        self.delivered_at = now

    def respond(self, response: UserResponse, now: datetime) -> None:
        target = (
            InterventionStatus.ACCEPTED
            if response == UserResponse.ACCEPTED
            else InterventionStatus.DISMISSED
        )
        self._move(target)
        self.user_response = response
        self.responded_at = now

    def expire(self) -> None:
        self._move(InterventionStatus.EXPIRED)

    def discard(self) -> None:
        self._move(InterventionStatus.DISCARDED)


# =============================================================================
# Reasoning traces
# =============================================================================


class AnalysisStep(BaseModel):
    """Summary of the analysis pass."""

    kind: Literal["analysis"] = "analysis"
    error_count: int = 0
    gap_count: int = 0
    finding_count: int = 0
    slow_component_count: int = 0
    cycle_count: int = 0
    incomplete: bool = False


class DetectionStep(BaseModel):
    """Outcome of one detector."""

    kind: Literal["detection"] = "detection"
    detector: str
    signatures: list[str] = Field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None


class PlanningStep(BaseModel):
    """What planning did with the detected problems."""

    kind: Literal["planning"] = "planning"
    queued: list[str] = Field(default_factory=list)  # Intervention ids
    merged: list[str] = Field(default_factory=list)  # Signatures folded into pending ones
    deferred: list[str] = Field(default_factory=list)  # Signatures held by the rate limiter
    suppressed: list[str] = Field(default_factory=list)  # Signatures in cool-down or awaiting response


class GenerationStep(BaseModel):
    """How an intervention payload was produced."""

    kind: Literal["generation"] = "generation"
    intervention_id: str
    generator: str
    fallback_used: bool = False
    confidence: float = 0.0
    error: Optional[str] = None


class FeedbackStep(BaseModel):
    """A user response and its scheduling effect."""

    kind: Literal["feedback"] = "feedback"
    intervention_id: str
    response: UserResponse
    cooldown_until: Optional[datetime] = None


ReasoningStep = Annotated[
    Union[AnalysisStep, DetectionStep, PlanningStep, GenerationStep, FeedbackStep],
    Field(discriminator="kind"),
]


class ReasoningTrace(BaseModel):
    """Append-only record of one decision. Never mutated once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=gen_id)
    session_id: str
    snapshot_version: int  # Reference to the snapshot, not a copy
    steps: list[ReasoningStep] = Field(default_factory=list)
    final_decision: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class Explanation(BaseModel):
    """Read-only bundle for the explanation interface."""

    intervention: Intervention
    problem: Problem
    trace: Optional[ReasoningTrace] = None
    summary: str
