"""Knowledge graph - concept models and the mastery engine."""

from .engine import KnowledgeGraphEngine, concept_repository_name
from .models import (
    # Enums
    ConceptCategory,
    EdgeKind,
    EvidenceType,
    # Models
    ConceptNode,
    ErrorSignal,
    MasteryEvidence,
    MasteryLevel,
    # Utilities
    gen_id,
    utcnow,
)

__all__ = [
    "KnowledgeGraphEngine",
    "concept_repository_name",
    # Enums
    "ConceptCategory",
    "EdgeKind",
    "EvidenceType",
    # Models
    "ConceptNode",
    "ErrorSignal",
    "MasteryEvidence",
    "MasteryLevel",
    # Utilities
    "gen_id",
    "utcnow",
]
