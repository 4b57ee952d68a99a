"""API dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Request

from attune.orchestration.registry import SessionRegistry, SessionRuntime


def get_registry(request: Request) -> SessionRegistry:
    """Get the registry the app was created with."""
    return request.app.state.registry


def get_runtime(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionRuntime:
    """Get the live session named in the path (NotFoundError -> 404)."""
    return registry.get(session_id)


# Type aliases for cleaner route signatures
Registry = Annotated[SessionRegistry, Depends(get_registry)]
Runtime = Annotated[SessionRuntime, Depends(get_runtime)]
