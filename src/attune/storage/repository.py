"""Repository contract and in-memory implementation.

The core treats persistence as an eventually-consistent external dependency:
writes are delivered at least once and must be idempotent, so every save is
keyed by (entity id, entity version) and a repeated save of the same pair is
ignored. Loads always return the highest stored version.
"""

import asyncio
import logging
from typing import Callable, Generic, Optional, Protocol, TypeVar

from pydantic import BaseModel

from attune.core.errors import FatalStorageError, NotFoundError, StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

KeyFn = Callable[[BaseModel], str]
VersionFn = Callable[[BaseModel], int]


def default_key(entity: BaseModel) -> str:
    """Entities are keyed by their ``id`` unless told otherwise."""
    return str(getattr(entity, "id"))


def default_version(entity: BaseModel) -> int:
    """Entities are versioned by their ``version`` unless told otherwise."""
    return int(getattr(entity, "version", 1))


class Repository(Protocol[T]):
    """What the core needs from a persistence engine."""

    name: str

    async def save(self, entity: T) -> None:
        """Store one version of an entity (idempotent on id + version)."""
        ...

    async def load(self, entity_id: str) -> T:
        """Load the latest version, raising NotFoundError if absent."""
        ...

    async def query(self, predicate: Callable[[T], bool]) -> list[T]:
        """Latest version of every entity matching the predicate."""
        ...

    async def history(self, entity_id: str) -> list[T]:
        """Every stored version of one entity, oldest first."""
        ...


class InMemoryRepository(Generic[T]):
    """Dict-backed repository.

    Entities are stored serialized so callers never share mutable state
    with the store.
    """

    def __init__(
        self,
        model: type[T],
        name: Optional[str] = None,
        key: KeyFn = default_key,
        version: VersionFn = default_version,
    ):
        self.model = model
        self.name = name or model.__name__.lower()
        self._key = key
        self._version = version
        self._rows: dict[str, dict[int, str]] = {}

    async def save(self, entity: T) -> None:
        versions = self._rows.setdefault(self._key(entity), {})
        versions.setdefault(self._version(entity), entity.model_dump_json())

    async def load(self, entity_id: str) -> T:
        versions = self._rows.get(entity_id)
        if not versions:
            raise NotFoundError(self.model.__name__, entity_id)
        return self.model.model_validate_json(versions[max(versions)])

    async def query(self, predicate: Callable[[T], bool]) -> list[T]:
        latest = [
            self.model.model_validate_json(versions[max(versions)])
            for versions in self._rows.values()
            if versions
        ]
        return [entity for entity in latest if predicate(entity)]

    async def history(self, entity_id: str) -> list[T]:
        versions = self._rows.get(entity_id, {})
        return [self.model.model_validate_json(versions[v]) for v in sorted(versions)]


class RetryingRepository(Generic[T]):
    """Wraps a repository with bounded retry and exponential backoff.

    Transient failures (StorageUnavailable) are retried; once the attempt
    budget is spent the call raises FatalStorageError. NotFoundError and
    every other error pass straight through.
    """

    def __init__(
        self,
        inner: Repository[T],
        attempts: int = 3,
        backoff: float = 0.1,
    ):
        self.inner = inner
        self.name = inner.name
        self.attempts = attempts
        self.backoff = backoff

    async def _call(self, operation: str, fn, *args):
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await fn(*args)
            except StorageUnavailable as e:
                last_error = e
                logger.warning(
                    f"{self.name}.{operation} attempt {attempt}/{self.attempts} failed: {e}"
                )
                if attempt < self.attempts and self.backoff:
                    await asyncio.sleep(self.backoff * (2 ** (attempt - 1)))
        raise FatalStorageError(f"{self.name}.{operation}", self.attempts, last_error)

    async def save(self, entity: T) -> None:
        await self._call("save", self.inner.save, entity)

    async def load(self, entity_id: str) -> T:
        return await self._call("load", self.inner.load, entity_id)

    async def query(self, predicate: Callable[[T], bool]) -> list[T]:
        return await self._call("query", self.inner.query, predicate)

    async def history(self, entity_id: str) -> list[T]:
        return await self._call("history", self.inner.history, entity_id)
