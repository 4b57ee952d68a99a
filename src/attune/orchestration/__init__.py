"""Session orchestration for Attune.

This module provides:
- SessionRuntime: context manager, knowledge graph and thought loop of one session
- SessionRegistry: explicit create-on-first-use registry of runtimes
"""

from .registry import SessionRegistry, SessionRuntime

__all__ = [
    "SessionRegistry",
    "SessionRuntime",
]
