"""Persistence repositories (in-memory, SQLite, retrying wrapper)."""

from .repository import (
    InMemoryRepository,
    Repository,
    RetryingRepository,
    default_key,
    default_version,
)
from .sqlite import SQLiteRepository, SQLiteStore

__all__ = [
    "InMemoryRepository",
    "Repository",
    "RetryingRepository",
    "SQLiteRepository",
    "SQLiteStore",
    "default_key",
    "default_version",
]
