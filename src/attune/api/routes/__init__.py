"""API routes."""

from .explanations import router as explanations_router
from .sessions import router as sessions_router

__all__ = [
    "explanations_router",
    "sessions_router",
]
