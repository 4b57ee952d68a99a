"""FastAPI application for the Attune backend."""

import contextlib
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from attune.context.manager import RefreshCallback
from attune.core.config import get_llm_client, get_settings
from attune.core.errors import (
    AttuneError,
    ConflictError,
    CycleRejected,
    FatalStorageError,
    NotFoundError,
    ValidationError,
)
from attune.core.logging import configure_logging
from attune.orchestration.registry import SessionRegistry
from attune.storage.sqlite import SQLiteStore
from attune.thought.generators import default_generators

from .routes import explanations_router, sessions_router

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[AttuneError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (CycleRejected, 409),
    (ConflictError, 409),
    (FatalStorageError, 503),
]


def status_for(error: AttuneError) -> int:
    """HTTP status for a domain error."""
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def attune_error_handler(request: Request, exc: AttuneError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def default_registry(refresh: Optional[RefreshCallback] = None) -> SessionRegistry:
    """Registry backed by the configured SQLite database and LLM, if any."""
    settings = get_settings()
    try:
        client = get_llm_client()
    except ValueError as e:
        logger.warning(str(e))
        client = None
    return SessionRegistry(
        settings,
        store=SQLiteStore(settings.db_path),
        generators=default_generators(client, settings.llm_model),
        refresh=refresh,
    )


def create_app(
    registry: Optional[SessionRegistry] = None,
    refresh: Optional[RefreshCallback] = None,
) -> FastAPI:
    """Build the application around a session registry.

    Args:
        registry: Registry to serve; defaults to one built from settings.
        refresh: Called with (session_id, version) when a read finds a
            session's context stale, so input adapters can re-observe it.
    """
    configure_logging(get_settings().log_level_int)
    registry = registry or default_registry(refresh)
    if refresh is not None:
        registry.refresh = refresh

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        """Close every live session on shutdown."""
        yield
        await registry.shutdown()

    app = FastAPI(
        title="Attune API",
        description="Context-aware assistant that watches work and intervenes when it helps",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    # Configure CORS for local frontends
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AttuneError, attune_error_handler)

    app.include_router(sessions_router)
    app.include_router(explanations_router)

    @app.get("/")
    def root() -> dict:
        """Root endpoint."""
        return {"message": "Attune API", "version": "0.1.0"}

    @app.get("/health")
    def health() -> dict:
        """Health check endpoint."""
        degraded = [r.session_id for r in registry.sessions() if r.degraded]
        return {"status": "degraded" if degraded else "healthy", "degraded_sessions": degraded}

    return app
