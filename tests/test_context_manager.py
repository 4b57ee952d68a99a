"""Tests for the ContextStateManager."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from attune.context import (
    ConceptEvidence,
    ContextStateManager,
    ErrorCorrelation,
    InputType,
)
from attune.core.errors import (
    FatalStorageError,
    InvalidEvidence,
    NotFoundError,
    ValidationError,
)
from attune.knowledge import ErrorSignal, EvidenceType, MasteryEvidence


class TestUpdateContext:
    """Tests for merging inputs."""

    @pytest.mark.asyncio
    async def test_commit_bumps_version_by_one(self, manager, make_input):
        state = await manager.update_context(make_input("userState.focus", "pagination bug"))

        assert state.version == 1
        assert state.user_state.focus == "pagination bug"
        assert manager.version == 1

    @pytest.mark.asyncio
    async def test_last_updated_uses_clock(self, manager, make_input, clock):
        clock.advance(30)
        state = await manager.update_context(make_input("userState.focus", "x"))

        assert state.last_updated == clock.now

    @pytest.mark.asyncio
    async def test_returned_state_is_a_copy(self, manager, make_input):
        state = await manager.update_context(make_input("projectState.dependencies", ["httpx"]))
        state.project_state.dependencies.append("mutated")

        snapshot = await manager.get_current_context()
        assert snapshot.state.project_state.dependencies == ["httpx"]

    @pytest.mark.asyncio
    async def test_rejects_input_for_another_session(self, manager, make_input):
        with pytest.raises(ValidationError):
            await manager.update_context(make_input("userState.focus", "x", session_id="other"))

        assert manager.version == 0

    @pytest.mark.asyncio
    async def test_rejects_unknown_path(self, manager, make_input):
        with pytest.raises(ValidationError):
            await manager.update_context(make_input("userState.mood", "happy"))

        assert manager.version == 0

    @pytest.mark.asyncio
    async def test_rejects_content_that_does_not_fit(self, manager, make_input):
        with pytest.raises(ValidationError):
            await manager.update_context(make_input("userState.recentActions", 5))

        assert manager.version == 0

    @pytest.mark.asyncio
    async def test_rejects_input_touching_nothing(self, manager, make_input):
        with pytest.raises(ValidationError):
            await manager.update_context(make_input())

    @pytest.mark.asyncio
    async def test_rejects_invalid_evidence_before_any_change(self, manager, make_input, engine):
        bad = ConceptEvidence(
            concept_id="loops",
            evidence=MasteryEvidence(type=EvidenceType.CORRECT_USAGE, strength=1.5),
        )

        with pytest.raises(InvalidEvidence):
            await manager.update_context(make_input("userState.focus", "x", evidence=[bad]))

        assert manager.version == 0
        assert "loops" not in engine

    @pytest.mark.asyncio
    async def test_rejects_invalid_error_signal_before_any_evidence_lands(self, manager, make_input, engine):
        good = ConceptEvidence(
            concept_id="loops",
            evidence=MasteryEvidence(type=EvidenceType.CORRECT_USAGE, strength=0.9),
        )
        bad = ErrorCorrelation(error=ErrorSignal(signature="off-by-one", strength=1.5), concepts=["ranges"])

        with pytest.raises(InvalidEvidence):
            await manager.update_context(make_input(type=InputType.CODE, evidence=[good], errors=[bad]))

        assert manager.version == 0
        assert "loops" not in engine
        assert "ranges" not in engine

    @pytest.mark.asyncio
    async def test_dict_key_write(self, manager, make_input):
        state = await manager.update_context(
            make_input("projectState.files.src/app.py", {"lines": 120}, type=InputType.CODE)
        )

        assert state.project_state.files == {"src/app.py": {"lines": 120}}
        assert "project_state.files[src/app.py]" in state.field_stamps

    @pytest.mark.asyncio
    async def test_source_is_recorded_as_adapter(self, manager, make_input):
        state = await manager.update_context(make_input("userState.focus", "x", source="editor"))
        state = await manager.update_context(make_input("userState.activity", "typing", source="editor"))

        assert state.active_session.adapters == ["editor"]

    @pytest.mark.asyncio
    async def test_goals_from_different_inputs_accumulate(self, manager, make_input):
        await manager.update_context(make_input("learningGoals", [{"id": "g1", "title": "Async", "concepts": ["promises"]}]))
        state = await manager.update_context(make_input("learningGoals", [{"id": "g2", "title": "Testing"}]))

        assert [goal.id for goal in state.learning_goals] == ["g1", "g2"]
        assert state.goal_concepts() == ["promises"]
        assert manager.audit_log() == []


class TestConcurrentUpdates:
    """Tests for concurrent and overlapping writes."""

    @pytest.mark.asyncio
    async def test_disjoint_updates_both_land(self, manager, make_input):
        await asyncio.gather(
            manager.update_context(make_input("userState.focus", "pagination")),
            manager.update_context(make_input("projectState.dependencies", ["httpx"])),
        )

        snapshot = await manager.get_current_context()
        assert snapshot.version == 2
        assert snapshot.state.user_state.focus == "pagination"
        assert snapshot.state.project_state.dependencies == ["httpx"]
        assert manager.audit_log() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("newer_first", [True, False])
    async def test_overlap_resolves_to_latest_timestamp(self, manager, make_input, clock, newer_first):
        older = make_input("userState.focus", "old", timestamp=clock.now)
        newer = make_input("userState.focus", "new", timestamp=clock.now + timedelta(seconds=1))
        order = [newer, older] if newer_first else [older, newer]

        for processed in order:
            await manager.update_context(processed)

        snapshot = await manager.get_current_context()
        assert snapshot.state.user_state.focus == "new"
        [entry] = manager.audit_log()
        assert entry.losing_input_id == older.id
        assert entry.winning_input_id == newer.id
        assert entry.losing_value == "old"

    @pytest.mark.asyncio
    async def test_losing_every_write_commits_no_version(self, manager, make_input, clock):
        await manager.update_context(make_input("userState.focus", "new", timestamp=clock.now))

        state = await manager.update_context(
            make_input("userState.focus", "old", timestamp=clock.now - timedelta(seconds=5))
        )

        assert state.version == 1
        assert len(manager.history()) == 2

    @pytest.mark.asyncio
    async def test_equal_timestamp_goes_to_later_arrival(self, manager, make_input, clock):
        await manager.update_context(make_input("userState.focus", "first", timestamp=clock.now))
        state = await manager.update_context(make_input("userState.focus", "second", timestamp=clock.now))

        assert state.user_state.focus == "second"

    @pytest.mark.asyncio
    async def test_parent_write_replaces_child_stamps(self, manager, make_input, clock):
        child = make_input("projectState.files.a.py", {"lines": 1}, timestamp=clock.now)
        parent = make_input("projectState", {"name": "demo"}, timestamp=clock.now + timedelta(seconds=1))
        await manager.update_context(child)
        state = await manager.update_context(parent)

        assert state.project_state.name == "demo"
        assert state.project_state.files == {}
        assert set(state.field_stamps) == {"project_state"}
        [entry] = manager.audit_log()
        assert entry.path == "project_state.files[a.py]"
        assert entry.losing_input_id == child.id

    @pytest.mark.asyncio
    async def test_older_child_loses_to_newer_parent(self, manager, make_input, clock):
        await manager.update_context(make_input("projectState", {"name": "demo"}, timestamp=clock.now))

        stale = make_input("projectState.files.a.py", {"lines": 1}, timestamp=clock.now - timedelta(seconds=1))
        state = await manager.update_context(stale)

        assert state.project_state.files == {}
        assert manager.audit_log()[0].losing_input_id == stale.id

    @pytest.mark.asyncio
    async def test_audit_entries_are_persisted(self, settings, engine, clock, make_input):
        audit_repository = MagicMock()
        audit_repository.save = AsyncMock()
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            audit_repository=audit_repository, clock=clock,
        )

        await manager.update_context(make_input("userState.focus", "a", timestamp=clock.now))
        await manager.update_context(make_input("userState.focus", "b", timestamp=clock.now))

        audit_repository.save.assert_awaited_once()


class TestKnowledgeMirroring:
    """Tests for evidence carried by inputs."""

    @pytest.mark.asyncio
    async def test_evidence_only_input_commits(self, manager, make_input, engine):
        evidence = ConceptEvidence(
            concept_id="loops",
            evidence=MasteryEvidence(type=EvidenceType.CORRECT_USAGE, strength=0.9),
        )

        state = await manager.update_context(make_input(type=InputType.CODE, evidence=[evidence]))

        assert state.version == 1
        assert state.user_state.knowledge["loops"] == engine.get_mastery_level("loops")

    @pytest.mark.asyncio
    async def test_error_correlation_reaches_engine(self, manager, make_input, engine):
        correlation = ErrorCorrelation(error=ErrorSignal(signature="off-by-one"), concepts=["loops", "ranges"])

        state = await manager.update_context(make_input(type=InputType.LOG, errors=[correlation]))

        assert set(state.user_state.knowledge) == {"loops", "ranges"}
        assert engine.get_node("loops").evidence_count == 1


class TestSubscriptions:
    """Tests for change notifications."""

    @pytest.mark.asyncio
    async def test_versions_arrive_in_order(self, manager, make_input):
        seen = []
        manager.subscribe_to_changes(lambda state: seen.append(state.version))

        for focus in ("a", "b", "c"):
            await manager.update_context(make_input("userState.focus", focus))
        await manager.flush()

        assert seen == [1, 2, 3]
        await manager.close()

    @pytest.mark.asyncio
    async def test_async_subscriber(self, manager, make_input):
        seen = []

        async def on_change(state):
            await asyncio.sleep(0)
            seen.append(state.user_state.focus)

        manager.subscribe_to_changes(on_change)
        await manager.update_context(make_input("userState.focus", "a"))
        await manager.update_context(make_input("userState.focus", "b"))
        await manager.flush()

        assert seen == ["a", "b"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_retried(self, manager, make_input):
        callback = MagicMock(side_effect=[RuntimeError("boom"), None])
        subscription = manager.subscribe_to_changes(callback)

        await manager.update_context(make_input("userState.focus", "a"))
        await manager.flush()

        assert callback.call_count == 2
        assert subscription.last_version == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_subscriber_that_gives_up_still_gets_later_versions(self, manager, make_input, settings):
        calls = []

        def on_change(state):
            calls.append(state.version)
            if state.version == 1:
                raise RuntimeError("boom")

        manager.subscribe_to_changes(on_change)
        await manager.update_context(make_input("userState.focus", "a"))
        await manager.update_context(make_input("userState.focus", "b"))
        await manager.flush()

        assert calls == [1] * (settings.subscriber_retries + 1) + [2]
        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, manager, make_input):
        seen = []
        subscription = manager.subscribe_to_changes(lambda state: seen.append(state.version))
        await manager.update_context(make_input("userState.focus", "a"))
        await manager.flush()

        subscription.unsubscribe()
        await manager.update_context(make_input("userState.focus", "b"))

        assert seen == [1]


class TestReads:
    """Tests for snapshots and freshness."""

    @pytest.mark.asyncio
    async def test_fresh_snapshot(self, manager):
        snapshot = await manager.get_current_context()

        assert snapshot.version == 0
        assert snapshot.stale is False
        assert snapshot.in_flight is False

    @pytest.mark.asyncio
    async def test_stale_snapshot_requests_refresh_once(self, settings, engine, clock):
        refresh = MagicMock()
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine, refresh=refresh, clock=clock
        )
        clock.advance(settings.context_ttl_seconds + 1)

        first = await manager.get_current_context()
        second = await manager.get_current_context()

        assert first.stale is True
        assert second.stale is True
        refresh.assert_called_once_with("session-1", 0)

    @pytest.mark.asyncio
    async def test_in_flight_merge_returns_committed_version(self, manager, make_input):
        await manager.update_context(make_input("userState.focus", "a"))
        manager._idle.clear()

        snapshot = await manager.get_current_context(wait=0.01)

        assert snapshot.version == 1
        assert snapshot.in_flight is True
        assert snapshot.stale is True
        manager._idle.set()

    @pytest.mark.asyncio
    async def test_history(self, manager, make_input):
        await manager.update_context(make_input("userState.focus", "a"))
        await manager.update_context(make_input("userState.focus", "b"))

        assert [state.version for state in manager.history()] == [0, 1, 2]


class TestPersistence:
    """Tests for persist and restore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, settings, engine, clock, context_repository, make_input):
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            repository=context_repository, clock=clock,
        )
        await manager.update_context(make_input("userState.focus", "pagination"))
        await manager.update_context(make_input("projectState.files.a.py", {"lines": 2}))
        saved = await manager.persist_context()

        fresh = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            repository=context_repository, clock=clock,
        )
        restored = await fresh.restore_context()

        assert restored == saved
        assert fresh.version == 2
        assert [s.version for s in await context_repository.history("session-1")] == [1, 2]

    @pytest.mark.asyncio
    async def test_restore_unknown_session(self, settings, engine, clock, context_repository):
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            repository=context_repository, clock=clock,
        )

        with pytest.raises(NotFoundError):
            await manager.restore_context()
        with pytest.raises(ValidationError):
            await manager.restore_context("session-2")

    @pytest.mark.asyncio
    async def test_restore_never_moves_backwards(self, settings, engine, clock, context_repository, make_input):
        settings = settings.model_copy(update={"autopersist_context": False})
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            repository=context_repository, clock=clock,
        )
        await manager.update_context(make_input("userState.focus", "a"))
        await manager.persist_context()
        await manager.update_context(make_input("userState.focus", "b"))
        received = []
        manager.subscribe_to_changes(lambda state: received.append(state.version))

        with pytest.raises(ValidationError):
            await manager.restore_context()
        await manager.update_context(make_input("userState.focus", "c"))
        await manager.flush()

        assert manager.version == 3
        assert received == [3]

    @pytest.mark.asyncio
    async def test_restore_without_repository(self, manager):
        with pytest.raises(ValidationError):
            await manager.restore_context()

    @pytest.mark.asyncio
    async def test_storage_failure_degrades(self, settings, engine, clock, make_input):
        repository = MagicMock()
        repository.save = AsyncMock(side_effect=FatalStorageError("contexts.save", 3))
        on_degraded = MagicMock()
        manager = ContextStateManager(
            "session-1", "user-1", settings, knowledge=engine,
            repository=repository, on_degraded=on_degraded, clock=clock,
        )

        state = await manager.update_context(make_input("userState.focus", "a"))

        assert state.version == 1
        assert manager.degraded is True
        on_degraded.assert_called_once()
        with pytest.raises(FatalStorageError):
            await manager.persist_context()
        snapshot = await manager.get_current_context()
        assert snapshot.state.user_state.focus == "a"
