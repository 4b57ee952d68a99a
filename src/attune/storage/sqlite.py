"""SQLite store for Attune.

All repositories share one versioned entity table. Bodies are stored as
JSON produced by pydantic, so a load reproduces every field exactly.
"""

import asyncio
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generic, Optional

from attune.core.errors import NotFoundError, StorageUnavailable

from .repository import KeyFn, T, VersionFn, default_key, default_version


# =============================================================================
# Schema Definition
# =============================================================================

SCHEMA = """
-- Versioned entities, one row per (collection, id, version)
CREATE TABLE IF NOT EXISTS entities (
    collection TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    body JSON NOT NULL,
    saved_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (collection, entity_id, version)
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_entities_collection ON entities(collection);
CREATE INDEX IF NOT EXISTS idx_entities_lookup ON entities(collection, entity_id, version DESC);
"""

LATEST_QUERY = """
SELECT e.body FROM entities e
JOIN (
    SELECT entity_id, MAX(version) AS version
    FROM entities WHERE collection = ?
    GROUP BY entity_id
) latest ON latest.entity_id = e.entity_id AND latest.version = e.version
WHERE e.collection = ?
ORDER BY e.entity_id
"""


# =============================================================================
# SQLiteStore Class
# =============================================================================


class SQLiteStore:
    """SQLite-based storage shared by every repository of one process."""

    def __init__(self, db_path: str | Path = ":memory:"):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = str(db_path)
        self._is_memory = self.db_path == ":memory:"
        self._persistent_conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        # For in-memory DBs, create persistent connection immediately
        if self._is_memory:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connection(self):
        """Get a database connection with proper cleanup.

        For in-memory databases, returns the persistent connection.
        For file-based databases, creates a new connection each time.
        Operational errors (locked or unreachable database) surface as
        StorageUnavailable so callers can retry them.
        """
        try:
            if self._is_memory:
                with self._lock:
                    try:
                        yield self._persistent_conn
                        self._persistent_conn.commit()
                    except Exception:
                        self._persistent_conn.rollback()
                        raise
            else:
                conn = sqlite3.connect(self.db_path, timeout=5.0)
                conn.row_factory = sqlite3.Row
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
                finally:
                    conn.close()
        except sqlite3.OperationalError as e:
            raise StorageUnavailable(str(e)) from e

    def repository(
        self,
        collection: str,
        model: type[T],
        key: KeyFn = default_key,
        version: VersionFn = default_version,
    ) -> "SQLiteRepository[T]":
        """Get a repository bound to one collection of this store."""
        return SQLiteRepository(self, collection, model, key=key, version=version)

    def collections(self) -> list[str]:
        """Names of every collection with at least one row."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT collection FROM entities ORDER BY collection"
            ).fetchall()
            return [row["collection"] for row in rows]

    def close(self) -> None:
        """Close the persistent in-memory connection, if any."""
        if self._persistent_conn is not None:
            self._persistent_conn.close()
            self._persistent_conn = None


class SQLiteRepository(Generic[T]):
    """Repository over one collection of a SQLiteStore.

    Blocking sqlite calls run in a worker thread so they never stall
    the event loop that drives the thought loops.
    """

    def __init__(
        self,
        store: SQLiteStore,
        collection: str,
        model: type[T],
        key: KeyFn = default_key,
        version: VersionFn = default_version,
    ):
        self.store = store
        self.name = collection
        self.model = model
        self._key = key
        self._version = version

    # =========================================================================
    # Sync operations
    # =========================================================================

    def save_sync(self, entity: T) -> None:
        with self.store.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO entities (collection, entity_id, version, body)
                VALUES (?, ?, ?, ?)
                """,
                (
                    self.name,
                    self._key(entity),
                    self._version(entity),
                    entity.model_dump_json(),
                ),
            )

    def load_sync(self, entity_id: str) -> T:
        with self.store.connection() as conn:
            row = conn.execute(
                """
                SELECT body FROM entities
                WHERE collection = ? AND entity_id = ?
                ORDER BY version DESC LIMIT 1
                """,
                (self.name, entity_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(self.model.__name__, entity_id)
        return self.model.model_validate_json(row["body"])

    def query_sync(self, predicate: Callable[[T], bool]) -> list[T]:
        with self.store.connection() as conn:
            rows = conn.execute(LATEST_QUERY, (self.name, self.name)).fetchall()
        entities = [self.model.model_validate_json(row["body"]) for row in rows]
        return [entity for entity in entities if predicate(entity)]

    def history_sync(self, entity_id: str) -> list[T]:
        with self.store.connection() as conn:
            rows = conn.execute(
                """
                SELECT body FROM entities
                WHERE collection = ? AND entity_id = ?
                ORDER BY version ASC
                """,
                (self.name, entity_id),
            ).fetchall()
        return [self.model.model_validate_json(row["body"]) for row in rows]

    # =========================================================================
    # Repository contract
    # =========================================================================

    async def save(self, entity: T) -> None:
        await asyncio.to_thread(self.save_sync, entity)

    async def load(self, entity_id: str) -> T:
        return await asyncio.to_thread(self.load_sync, entity_id)

    async def query(self, predicate: Callable[[T], bool]) -> list[T]:
        return await asyncio.to_thread(self.query_sync, predicate)

    async def history(self, entity_id: str) -> list[T]:
        return await asyncio.to_thread(self.history_sync, entity_id)
