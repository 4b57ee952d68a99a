"""Common test fixtures for Attune tests."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from attune.api.main import create_app
from attune.context.manager import ContextStateManager, context_key
from attune.context.models import ContextState, InputType, ProcessedInput
from attune.core.config import Settings
from attune.knowledge.engine import KnowledgeGraphEngine
from attune.knowledge.models import ConceptNode
from attune.orchestration.registry import SessionRegistry
from attune.storage.repository import InMemoryRepository
from attune.thought.loop import ThoughtLoop


class FakeClock:
    """Controllable time source."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def settings():
    """Settings with short timings, isolated from the environment file."""
    return Settings(
        _env_file=None,
        tick_interval_seconds=0.05,
        analysis_timeout_seconds=1.0,
        generator_timeout_seconds=0.2,
        read_wait_seconds=0.05,
        storage_retry_backoff_seconds=0.0,
    )


@pytest.fixture
def clock():
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def engine(settings, clock):
    """Knowledge graph for user-1 without persistence."""
    return KnowledgeGraphEngine("user-1", settings, clock=clock)


@pytest.fixture
def concept_repository():
    """In-memory concept store versioned by node revision."""
    return InMemoryRepository(ConceptNode, name="concepts:user-1", version=lambda node: node.revision)


@pytest.fixture
def context_repository():
    """In-memory context store keyed by session."""
    return InMemoryRepository(ContextState, name="contexts", key=context_key)


@pytest.fixture
def manager(settings, engine, clock):
    """Context manager for session-1 feeding the engine."""
    return ContextStateManager("session-1", "user-1", settings, knowledge=engine, clock=clock)


@pytest.fixture
def loop(settings, manager, engine, clock):
    """Thought loop for session-1 with template content only."""
    return ThoughtLoop("session-1", manager, engine, settings, clock=clock)


@pytest.fixture
def make_input():
    """Factory for processed inputs on session-1."""

    def _make(path=None, content=None, session_id="session-1", **kwargs):
        kwargs.setdefault("type", InputType.ACTIVITY)
        return ProcessedInput(session_id=session_id, path=path, content=content, **kwargs)

    return _make


@pytest.fixture
def registry(settings):
    """In-memory session registry."""
    return SessionRegistry(settings)


@pytest.fixture
def client(registry):
    """Test client around an in-memory registry."""
    with TestClient(create_app(registry)) as client:
        yield client
