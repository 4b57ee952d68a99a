"""Tests for repositories."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

from attune.core.errors import FatalStorageError, NotFoundError, StorageUnavailable
from attune.storage import InMemoryRepository, RetryingRepository, SQLiteStore


class Note(BaseModel):
    id: str
    version: int = 1
    text: str = ""


@pytest.fixture(params=["memory", "sqlite", "sqlite-file"])
def repository(request, tmp_path):
    """Each repository implementation over the Note model."""
    if request.param == "memory":
        yield InMemoryRepository(Note, name="notes")
        return
    path = ":memory:" if request.param == "sqlite" else tmp_path / "attune.db"
    store = SQLiteStore(path)
    yield store.repository("notes", Note)
    store.close()


class TestRepositoryContract:
    """Behaviour shared by every repository."""

    @pytest.mark.asyncio
    async def test_load_returns_latest_version(self, repository):
        await repository.save(Note(id="n1", version=1, text="draft"))
        await repository.save(Note(id="n1", version=2, text="final"))

        loaded = await repository.load("n1")

        assert loaded.version == 2
        assert loaded.text == "final"

    @pytest.mark.asyncio
    async def test_repeated_save_is_ignored(self, repository):
        await repository.save(Note(id="n1", version=1, text="first"))
        await repository.save(Note(id="n1", version=1, text="retry"))

        assert (await repository.load("n1")).text == "first"
        assert len(await repository.history("n1")) == 1

    @pytest.mark.asyncio
    async def test_load_unknown(self, repository):
        with pytest.raises(NotFoundError):
            await repository.load("missing")

    @pytest.mark.asyncio
    async def test_query_sees_latest_only(self, repository):
        await repository.save(Note(id="n1", version=1, text="keep"))
        await repository.save(Note(id="n1", version=2, text="drop"))
        await repository.save(Note(id="n2", version=1, text="keep"))

        found = await repository.query(lambda note: note.text == "keep")

        assert [note.id for note in found] == ["n2"]

    @pytest.mark.asyncio
    async def test_history_is_oldest_first(self, repository):
        for version in (2, 1, 3):
            await repository.save(Note(id="n1", version=version))

        assert [note.version for note in await repository.history("n1")] == [1, 2, 3]
        assert await repository.history("missing") == []


class TestSQLiteStore:
    """Tests specific to the SQLite store."""

    def test_collections_are_isolated(self):
        store = SQLiteStore()
        store.repository("a", Note).save_sync(Note(id="n1"))
        store.repository("b", Note).save_sync(Note(id="n1", text="other"))

        assert store.collections() == ["a", "b"]
        assert store.repository("a", Note).load_sync("n1").text == ""
        store.close()

    def test_custom_key_and_version(self, tmp_path):
        store = SQLiteStore(tmp_path / "nested" / "attune.db")
        repository = store.repository("notes", Note, key=lambda n: n.text, version=lambda n: 7)
        repository.save_sync(Note(id="n1", text="by-text"))

        assert repository.load_sync("by-text").id == "n1"
        assert (tmp_path / "nested" / "attune.db").exists()


class TestRetryingRepository:
    """Tests for bounded retry."""

    def _inner(self, **methods):
        inner = MagicMock()
        inner.name = "notes"
        for name, mock in methods.items():
            setattr(inner, name, mock)
        return inner

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        inner = self._inner(save=AsyncMock(side_effect=[StorageUnavailable("locked"), None]))
        repository = RetryingRepository(inner, attempts=3, backoff=0)

        await repository.save(Note(id="n1"))

        assert inner.save.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self):
        inner = self._inner(load=AsyncMock(side_effect=StorageUnavailable("locked")))
        repository = RetryingRepository(inner, attempts=3, backoff=0)

        with pytest.raises(FatalStorageError) as exc_info:
            await repository.load("n1")

        assert inner.load.await_count == 3
        assert exc_info.value.operation == "notes.load"
        assert isinstance(exc_info.value.cause, StorageUnavailable)

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        inner = self._inner(load=AsyncMock(side_effect=NotFoundError("Note", "n1")))
        repository = RetryingRepository(inner, attempts=3, backoff=0)

        with pytest.raises(NotFoundError):
            await repository.load("n1")

        assert inner.load.await_count == 1

    @pytest.mark.asyncio
    async def test_passes_results_through(self):
        inner = self._inner(query=AsyncMock(return_value=[Note(id="n1")]))
        repository = RetryingRepository(inner)

        assert await repository.query(lambda note: True) == [Note(id="n1")]
