"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from attune.knowledge.models import EdgeKind
from attune.thought.models import LoopState, UserResponse


# Session schemas
class SessionCreate(BaseModel):
    """Request to open (or reattach to) a session."""

    session_id: str
    user_id: str
    monitor: bool = False  # Start the thought loop right away


class SessionResponse(BaseModel):
    """Session status."""

    session_id: str
    user_id: str
    version: int
    state: LoopState
    running: bool
    degraded: bool
    cycles: int = 0
    pending_interventions: int = 0


# Knowledge schemas
class GapsResponse(BaseModel):
    """Gaps behind a set of required concepts, prerequisites first."""

    required: list[str]
    gaps: list[str] = Field(default_factory=list)


class PrerequisiteCreate(BaseModel):
    """Request to add a prerequisite edge."""

    prerequisite_id: str
    kind: EdgeKind = EdgeKind.HARD


class PrerequisitesResponse(BaseModel):
    """Prerequisites of one concept."""

    concept_id: str
    prerequisites: list[str] = Field(default_factory=list)


# Intervention schemas
class ResponseCreate(BaseModel):
    """User feedback on a delivered intervention."""

    response: UserResponse


class InterventionSummary(BaseModel):
    """Compact view of an intervention for listings."""

    id: str
    kind: str
    status: str
    problem_type: str
    severity: str
    description: str
    fallback_used: bool = False
    delivered_at: Optional[datetime] = None
    trace_id: Optional[str] = None
