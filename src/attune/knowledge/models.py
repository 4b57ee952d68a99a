"""Pydantic models for the Attune knowledge graph.

Node Types:
- ConceptNode: a unit of trackable knowledge with mastery and confidence

Edge Types:
- hard: prerequisite whose violation blocks progression (must stay acyclic)
- soft: advisory relationship hint (may cycle)

Evidence:
- MasteryEvidence: an immutable observation that moves mastery/confidence
- ErrorSignal: an error signature observed against one or more concepts
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


def gen_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class EvidenceType(str, Enum):
    """What an observation says about a concept."""

    CORRECT_USAGE = "correct_usage"
    ERROR_PATTERN = "error_pattern"
    EXPLANATION_REQUEST = "explanation_request"
    SUCCESSFUL_APPLICATION = "successful_application"

    @property
    def target(self) -> Optional[float]:
        """Mastery value this evidence pulls toward (None leaves mastery alone)."""
        return _EVIDENCE_TARGETS[self]


_EVIDENCE_TARGETS: dict[EvidenceType, Optional[float]] = {
    EvidenceType.CORRECT_USAGE: 1.0,
    EvidenceType.SUCCESSFUL_APPLICATION: 1.0,
    EvidenceType.ERROR_PATTERN: 0.0,
    EvidenceType.EXPLANATION_REQUEST: None,
}


class ConceptCategory(str, Enum):
    """Broad kind of concept."""

    LANGUAGE_FEATURE = "language_feature"
    ALGORITHM = "algorithm"
    PATTERN = "pattern"
    TOOLING = "tooling"
    DOMAIN = "domain"
    GENERAL = "general"


class EdgeKind(str, Enum):
    """Strength of a prerequisite relationship."""

    HARD = "hard"  # Blocks progression, must stay acyclic
    SOFT = "soft"  # Advisory, may cycle


# =============================================================================
# Evidence Models
# =============================================================================


class MasteryEvidence(BaseModel):
    """One observation about a concept. Immutable once recorded.

    Strength must lie in [0, 1]; the engine raises InvalidEvidence otherwise.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=gen_id)
    type: EvidenceType
    strength: float
    context: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorSignal(BaseModel):
    """An error signature attributed to one or more concepts."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=gen_id)
    signature: str  # "off-by-one", "unawaited-coroutine"
    strength: float = 0.5
    context: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Concept Model
# =============================================================================


class ConceptNode(BaseModel):
    """A concept in one user's knowledge graph.

    ``prerequisites`` and ``dependents`` map neighbour ids to edge kinds and
    are kept as mutual inverses by the engine.
    """

    id: str
    category: ConceptCategory = ConceptCategory.GENERAL
    mastery: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    prerequisites: dict[str, EdgeKind] = Field(default_factory=dict)
    dependents: dict[str, EdgeKind] = Field(default_factory=dict)
    evidence: list[MasteryEvidence] = Field(default_factory=list)  # Most recent N
    evidence_count: int = 0
    active: bool = True
    confused: bool = False
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def hard_prerequisites(self) -> list[str]:
        """Direct hard prerequisite ids in insertion order."""
        return [cid for cid, kind in self.prerequisites.items() if kind == EdgeKind.HARD]

    def has_evidence(self, evidence_id: str) -> bool:
        """Whether an evidence id is still in the bounded log."""
        return any(item.id == evidence_id for item in self.evidence)


class MasteryLevel(BaseModel):
    """Read model for a concept's mastery."""

    concept_id: str
    mastery: float = 0.0
    confidence: float = 0.0
    known: bool = False  # False for never-seen concepts
    confused: bool = False

    @classmethod
    def from_node(cls, node: ConceptNode) -> "MasteryLevel":
        """Create from a full ConceptNode."""
        return cls(
            concept_id=node.id,
            mastery=node.mastery,
            confidence=node.confidence,
            known=True,
            confused=node.confused,
        )
