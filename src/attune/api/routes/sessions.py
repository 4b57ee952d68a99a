"""Session API routes: inputs, context, knowledge, monitoring."""

from typing import Optional

from fastapi import APIRouter, Query

from attune.context.models import ContextSnapshot, ContextState, ProcessedInput
from attune.knowledge.models import MasteryLevel
from attune.orchestration.registry import SessionRuntime

from ..deps import Registry, Runtime
from ..schemas import (
    GapsResponse,
    PrerequisiteCreate,
    PrerequisitesResponse,
    SessionCreate,
    SessionResponse,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _session_to_response(runtime: SessionRuntime) -> SessionResponse:
    """Convert a runtime to the response schema."""
    status = runtime.loop.status()
    return SessionResponse(
        session_id=runtime.session_id,
        user_id=runtime.user_id,
        version=runtime.context.version,
        state=runtime.loop.state,
        running=status["running"],
        degraded=runtime.degraded,
        cycles=status["cycles"],
        pending_interventions=status["pending"],
    )


@router.post("", response_model=SessionResponse)
async def open_session(data: SessionCreate, registry: Registry) -> SessionResponse:
    """Open a session, restoring persisted state on first use."""
    runtime = await registry.get_or_create(data.session_id, data.user_id)
    if data.monitor:
        runtime.loop.start_monitoring()
    return _session_to_response(runtime)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(runtime: Runtime) -> SessionResponse:
    """Get session status."""
    return _session_to_response(runtime)


@router.delete("/{session_id}", status_code=204)
async def close_session(session_id: str, registry: Registry) -> None:
    """Stop monitoring, persist the context and close the session."""
    await registry.close(session_id)


# ============================================================================
# Context
# ============================================================================


@router.post("/{session_id}/inputs", response_model=ContextState)
async def ingest_input(
    session_id: str,
    processed_input: ProcessedInput,
    registry: Registry,
    user_id: Optional[str] = Query(default=None, description="Needed to open a new session"),
) -> ContextState:
    """Merge one processed input from an input adapter."""
    if user_id is not None:
        runtime = await registry.get_or_create(session_id, user_id)
    else:
        runtime = registry.get(session_id)
    return await runtime.context.update_context(processed_input)


@router.get("/{session_id}/context", response_model=ContextSnapshot)
async def get_context(runtime: Runtime) -> ContextSnapshot:
    """Current snapshot with staleness flags."""
    return await runtime.context.get_current_context()


@router.get("/{session_id}/history", response_model=list[ContextState])
def get_history(runtime: Runtime) -> list[ContextState]:
    """Every committed version this process has seen, oldest first."""
    return runtime.context.history()


# ============================================================================
# Knowledge
# ============================================================================


@router.get("/{session_id}/knowledge/gaps", response_model=GapsResponse)
async def get_gaps(
    runtime: Runtime,
    required: list[str] = Query(default=[]),
) -> GapsResponse:
    """Gaps behind the required concepts (or the active goals' concepts)."""
    if not required:
        snapshot = await runtime.context.get_current_context()
        required = snapshot.state.goal_concepts()
    return GapsResponse(required=required, gaps=runtime.knowledge.identify_gaps(required))


@router.get("/{session_id}/knowledge/{concept_id}", response_model=MasteryLevel)
def get_mastery(concept_id: str, runtime: Runtime) -> MasteryLevel:
    """Mastery level of one concept (zero for concepts never observed)."""
    return runtime.knowledge.get_mastery_level(concept_id)


@router.get(
    "/{session_id}/knowledge/{concept_id}/prerequisites",
    response_model=PrerequisitesResponse,
)
def get_prerequisites(concept_id: str, runtime: Runtime) -> PrerequisitesResponse:
    """Direct prerequisites of a concept."""
    return PrerequisitesResponse(
        concept_id=concept_id,
        prerequisites=runtime.knowledge.get_prerequisites(concept_id),
    )


@router.post(
    "/{session_id}/knowledge/{concept_id}/prerequisites",
    response_model=PrerequisitesResponse,
)
async def add_prerequisite(
    concept_id: str,
    data: PrerequisiteCreate,
    runtime: Runtime,
) -> PrerequisitesResponse:
    """Add a prerequisite edge (CycleRejected -> 409)."""
    await runtime.knowledge.add_prerequisite(concept_id, data.prerequisite_id, data.kind)
    return PrerequisitesResponse(
        concept_id=concept_id,
        prerequisites=runtime.knowledge.get_prerequisites(concept_id),
    )


# ============================================================================
# Monitoring
# ============================================================================


@router.post("/{session_id}/monitoring/start", response_model=SessionResponse)
async def start_monitoring(runtime: Runtime) -> SessionResponse:
    """Start or resume the thought loop."""
    runtime.loop.start_monitoring()
    return _session_to_response(runtime)


@router.post("/{session_id}/monitoring/stop", response_model=SessionResponse)
async def stop_monitoring(runtime: Runtime) -> SessionResponse:
    """Pause the thought loop."""
    runtime.loop.stop_monitoring()
    return _session_to_response(runtime)


@router.post("/{session_id}/monitoring/cycle", response_model=SessionResponse)
async def run_cycle(runtime: Runtime) -> SessionResponse:
    """Run one cycle now, outside the tick schedule."""
    await runtime.loop.run_cycle()
    return _session_to_response(runtime)
