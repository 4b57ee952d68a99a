"""Tests for the SessionRegistry."""

import asyncio
from unittest.mock import MagicMock

import pytest

from attune.context import InputType, ProcessedInput
from attune.core.errors import FatalStorageError, NotFoundError, ValidationError
from attune.knowledge import EvidenceType, MasteryEvidence
from attune.orchestration import SessionRegistry
from attune.storage import SQLiteStore
from attune.thought import InterventionStatus, UserResponse


@pytest.fixture
def store():
    """In-memory SQLite store."""
    store = SQLiteStore()
    yield store
    store.close()


@pytest.fixture
def registry(settings, store):
    """Registry persisting to the in-memory store."""
    return SessionRegistry(settings, store=store)


def focus_input(session_id, focus):
    return ProcessedInput(session_id=session_id, type=InputType.ACTIVITY, path="userState.focus", content=focus)


class TestGetOrCreate:
    """Test session creation."""

    @pytest.mark.asyncio
    async def test_returns_same_runtime(self, registry):
        """Test a live session is reused."""
        first = await registry.get_or_create("s1", "u1")
        second = await registry.get_or_create("s1", "u1")

        assert first is second
        assert registry.get("s1") is first
        assert len(registry.sessions()) == 1

    @pytest.mark.asyncio
    async def test_rejects_other_user(self, registry):
        """Test a session cannot be claimed by a second user."""
        await registry.get_or_create("s1", "u1")

        with pytest.raises(ValidationError):
            await registry.get_or_create("s1", "u2")

    @pytest.mark.asyncio
    async def test_sessions_of_one_user_share_the_graph(self, registry):
        """Test one knowledge graph per user."""
        a = await registry.get_or_create("s1", "u1")
        b = await registry.get_or_create("s2", "u1")
        c = await registry.get_or_create("s3", "u2")

        assert a.knowledge is b.knowledge
        assert a.knowledge is not c.knowledge

    @pytest.mark.asyncio
    async def test_unknown_session(self, registry):
        """Test get raises NotFoundError."""
        with pytest.raises(NotFoundError):
            registry.get("missing")
        with pytest.raises(NotFoundError):
            await registry.close("missing")

    @pytest.mark.asyncio
    async def test_without_store(self, settings):
        """Test everything stays in memory without a store."""
        registry = SessionRegistry(settings)

        runtime = await registry.get_or_create("s1", "u1")

        assert runtime.context.repository is None
        assert runtime.loop.intervention_repository is None


class TestCloseAndRestore:
    """Test persistence across close and reopen."""

    @pytest.mark.asyncio
    async def test_context_and_knowledge_survive(self, registry):
        """Test a reopened session resumes from storage."""
        runtime = await registry.get_or_create("s1", "u1")
        await runtime.context.update_context(focus_input("s1", "pagination"))
        await runtime.knowledge.update_mastery(
            "loops", MasteryEvidence(type=EvidenceType.CORRECT_USAGE, strength=0.9)
        )
        expected = runtime.knowledge.get_mastery_level("loops")

        await registry.close("s1")
        with pytest.raises(NotFoundError):
            registry.get("s1")

        reopened = await registry.get_or_create("s1", "u1")
        snapshot = await reopened.context.get_current_context()
        assert reopened is not runtime
        assert snapshot.version == 1
        assert snapshot.state.user_state.focus == "pagination"
        assert reopened.knowledge.get_mastery_level("loops") == expected

    @pytest.mark.asyncio
    async def test_interventions_survive(self, registry):
        """Test delivered interventions and traces are reloaded."""
        runtime = await registry.get_or_create("s1", "u1")
        await runtime.context.update_context(ProcessedInput(
            session_id="s1",
            type=InputType.SYSTEM,
            path="projectState.securityFindings",
            content=[{"rule": "hardcoded-secret", "component": "config"}],
        ))
        await runtime.loop.run_cycle()
        await registry.close("s1")

        reopened = await registry.get_or_create("s1", "u1")

        [intervention] = reopened.loop.interventions()
        assert intervention.status == InterventionStatus.DELIVERED
        assert reopened.loop.get_trace(intervention.trace_id).id == intervention.trace_id

    @pytest.mark.asyncio
    async def test_dismissal_cooldown_survives_restart(self, settings, store):
        """Test a dismissed problem is not re-delivered after a restart."""
        registry = SessionRegistry(settings, store=store)
        runtime = await registry.get_or_create("s1", "u1")
        await runtime.context.update_context(ProcessedInput(
            session_id="s1",
            type=InputType.SYSTEM,
            path="projectState.securityFindings",
            content=[{"rule": "hardcoded-secret", "component": "config"}],
        ))
        await runtime.loop.run_cycle()
        [intervention] = runtime.loop.interventions()
        await runtime.loop.record_response(intervention.id, UserResponse.DISMISSED)
        await registry.shutdown()

        restarted = SessionRegistry(settings, store=store)
        reopened = await restarted.get_or_create("s1", "u1")
        await reopened.loop.run_cycle()

        assert [i.status for i in reopened.loop.interventions()] == [InterventionStatus.DISMISSED]
        await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, registry):
        """Test shutdown closes every live session."""
        await registry.get_or_create("s1", "u1")
        await registry.get_or_create("s2", "u2")

        await registry.shutdown()

        assert registry.sessions() == []


class TestDegradedWiring:
    """Test storage failures pause the right loops."""

    @pytest.mark.asyncio
    async def test_context_failure_pauses_its_session(self, registry):
        """Test a context storage failure pauses only that session."""
        a = await registry.get_or_create("s1", "u1")
        b = await registry.get_or_create("s2", "u1")

        a.context.on_degraded(FatalStorageError("contexts.save", 3))

        assert a.loop.degraded is True
        assert b.loop.degraded is False

    @pytest.mark.asyncio
    async def test_knowledge_failure_pauses_every_session_of_the_user(self, registry):
        """Test a graph storage failure pauses all of the user's sessions."""
        a = await registry.get_or_create("s1", "u1")
        b = await registry.get_or_create("s2", "u1")
        c = await registry.get_or_create("s3", "u2")

        a.knowledge.on_degraded(FatalStorageError("concepts.save", 3))

        assert a.loop.degraded and b.loop.degraded
        assert c.loop.degraded is False


class TestRefresh:
    """Test stale reads reach the input adapters."""

    @pytest.mark.asyncio
    async def test_stale_read_requests_refresh(self, settings):
        """Test the registry hands its refresh callback to every session."""
        settings.context_ttl_seconds = 0.01
        refresh = MagicMock()
        registry = SessionRegistry(settings, refresh=refresh)
        a = await registry.get_or_create("s1", "u1")
        b = await registry.get_or_create("s2", "u2")
        await asyncio.sleep(0.02)

        snapshot = await a.context.get_current_context()
        await b.context.get_current_context()

        assert snapshot.stale is True
        refresh.assert_any_call("s1", 0)
        refresh.assert_any_call("s2", 0)
        await registry.shutdown()
