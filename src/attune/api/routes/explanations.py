"""Explanation API routes: problems, interventions, traces, feedback.

Read-only except for the user response endpoint.
"""

from typing import Optional

from fastapi import APIRouter

from attune.thought.models import (
    Explanation,
    Intervention,
    InterventionStatus,
    Problem,
    ReasoningTrace,
)

from ..deps import Runtime
from ..schemas import InterventionSummary, ResponseCreate

router = APIRouter(prefix="/api/sessions", tags=["explanations"])


def _intervention_to_summary(intervention: Intervention) -> InterventionSummary:
    """Convert an intervention to the listing schema."""
    return InterventionSummary(
        id=intervention.id,
        kind=intervention.kind.value,
        status=intervention.status.value,
        problem_type=intervention.problem.type.value,
        severity=intervention.problem.severity.value,
        description=intervention.problem.description,
        fallback_used=intervention.fallback_used,
        delivered_at=intervention.delivered_at,
        trace_id=intervention.trace_id,
    )


@router.get("/{session_id}/problems", response_model=list[Problem])
def list_problems(runtime: Runtime) -> list[Problem]:
    """Problems behind open interventions, highest priority first."""
    return runtime.loop.problems()


@router.get("/{session_id}/interventions", response_model=list[InterventionSummary])
def list_interventions(
    runtime: Runtime,
    status: Optional[InterventionStatus] = None,
) -> list[InterventionSummary]:
    """Interventions of the session, optionally filtered by status."""
    return [_intervention_to_summary(i) for i in runtime.loop.interventions(status)]


@router.get("/{session_id}/interventions/{intervention_id}", response_model=Intervention)
def get_intervention(intervention_id: str, runtime: Runtime) -> Intervention:
    """One intervention with its payload."""
    return runtime.loop.get_intervention(intervention_id)


@router.get(
    "/{session_id}/interventions/{intervention_id}/explanation",
    response_model=Explanation,
)
def explain_intervention(intervention_id: str, runtime: Runtime) -> Explanation:
    """Why this intervention exists: problem, trace and a summary."""
    return runtime.loop.explain(intervention_id)


@router.post(
    "/{session_id}/interventions/{intervention_id}/response",
    response_model=Intervention,
)
async def respond_to_intervention(
    intervention_id: str,
    data: ResponseCreate,
    runtime: Runtime,
) -> Intervention:
    """Record the user's reaction (InvalidTransition -> 422)."""
    intervention = await runtime.loop.record_response(intervention_id, data.response)
    return intervention.model_copy(deep=True)


@router.get("/{session_id}/traces", response_model=list[ReasoningTrace])
def list_traces(runtime: Runtime) -> list[ReasoningTrace]:
    """Every reasoning trace of the session, oldest first."""
    return runtime.loop.traces()


@router.get("/{session_id}/traces/{trace_id}", response_model=ReasoningTrace)
def get_trace(trace_id: str, runtime: Runtime) -> ReasoningTrace:
    """One reasoning trace."""
    return runtime.loop.get_trace(trace_id)
