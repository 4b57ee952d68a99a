"""ContextStateManager - the single writer of one session's ContextState.

Concurrent input adapters call ``update_context``; writes are serialized
by a per-session lock and each committed merge bumps the version by one.
Readers never take the lock: they get the latest committed version,
waiting at most ``read_wait`` for an in-flight merge.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError as SchemaError

from attune.core.config import Settings
from attune.core.errors import ConflictError, FatalStorageError, ValidationError
from attune.knowledge.engine import KnowledgeGraphEngine
from attune.knowledge.models import utcnow
from attune.storage.repository import Repository

from .merge import get_value, overlaps, resolve_writes, set_value
from .models import (
    AuditEntry,
    ContextSnapshot,
    ContextState,
    FieldStamp,
    ProcessedInput,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ContextState], Union[None, Awaitable[None]]]
RefreshCallback = Callable[[str, int], Union[None, Awaitable[None]]]


def context_key(state: ContextState) -> str:
    """Contexts are stored per session."""
    return state.session_id


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class Subscription:
    """One subscriber's ordered delivery queue.

    Versions are queued in commit order and delivered by a dedicated task,
    so a slow subscriber never delays commits or other subscribers.
    """

    def __init__(
        self,
        manager: "ContextStateManager",
        callback: ChangeCallback,
        retries: int,
    ):
        self.manager = manager
        self.callback = callback
        self.retries = retries
        self.last_version: Optional[int] = None
        self._queue: asyncio.Queue[ContextState] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.active = True

    def publish(self, state: ContextState) -> None:
        if not self.active:
            return
        self._queue.put_nowait(state)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            state = await self._queue.get()
            try:
                await self._deliver(state)
            finally:
                self._queue.task_done()

    async def _deliver(self, state: ContextState) -> None:
        for attempt in range(self.retries + 1):
            try:
                await _maybe_await(self.callback(state.model_copy(deep=True)))
                self.last_version = state.version
                return
            except Exception:
                logger.exception(
                    f"Subscriber failed on version {state.version} "
                    f"(attempt {attempt + 1}/{self.retries + 1})"
                )
        logger.error(f"Subscriber gave up on version {state.version}")

    async def drain(self) -> None:
        """Wait until every queued version has been delivered."""
        await self._queue.join()

    def unsubscribe(self) -> None:
        """Stop delivery. Versions still queued are dropped."""
        self.active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.manager._subscriptions.discard(self)


class ContextStateManager:
    """Owns the authoritative ContextState of one session.

    Example:
        manager = ContextStateManager("session-1", "user-1", settings, knowledge=engine)
        await manager.update_context(ProcessedInput(
            session_id="session-1", type=InputType.ACTIVITY,
            path="userState.focus", content="pagination bug"))
        snapshot = await manager.get_current_context()
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        settings: Optional[Settings] = None,
        knowledge: Optional[KnowledgeGraphEngine] = None,
        repository: Optional[Repository[ContextState]] = None,
        audit_repository: Optional[Repository[AuditEntry]] = None,
        refresh: Optional[RefreshCallback] = None,
        on_degraded: Optional[Callable[[FatalStorageError], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the manager.

        Args:
            session_id: Session this manager owns.
            user_id: User the session belongs to.
            settings: Tunable constants.
            knowledge: Engine that receives evidence carried by inputs.
            repository: Store for context versions (keyed by session id + version).
            audit_repository: Store for audit entries.
            refresh: Asked to re-observe when a read finds the state stale.
            on_degraded: Called when persistence fails past the retry budget.
            clock: Time source, injectable for tests.
        """
        self.session_id = session_id
        self.user_id = user_id
        self.settings = settings or Settings()
        self.knowledge = knowledge
        self.repository = repository
        self.audit_repository = audit_repository
        self.refresh = refresh
        self.on_degraded = on_degraded
        self.clock = clock
        self.degraded = False

        now = clock()
        self._current = ContextState(
            session_id=session_id,
            user_id=user_id,
            last_updated=now,
        )
        self._current.active_session.started_at = now
        self._history: list[ContextState] = [self._current.model_copy(deep=True)]
        self._audit: list[AuditEntry] = []
        self._write_lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._subscriptions: set[Subscription] = set()
        self._last_published = 0
        self._refresh_requested_for: Optional[int] = None
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # Writes
    # =========================================================================

    async def update_context(self, processed_input: ProcessedInput) -> ContextState:
        """Merge one processed input, producing the next version.

        Disjoint subtrees merge independently. Overlapping subtrees resolve
        latest-timestamp-wins (ties go to the later arrival); the loser is
        recorded in the audit log. An input that loses every overlap and
        carries no evidence commits nothing.

        Returns:
            A copy of the state after the merge.

        Raises:
            ValidationError: Wrong session, unknown path, or content that
                does not fit the subtree. No state changes in that case.
            InvalidEvidence: Evidence strength outside [0, 1].
        """
        if processed_input.session_id != self.session_id:
            raise ValidationError(
                f"Input {processed_input.id} is for session {processed_input.session_id}, "
                f"not {self.session_id}"
            )
        writes = (
            resolve_writes(processed_input.path, processed_input.content)
            if processed_input.path
            else []
        )
        if not writes and not processed_input.evidence and not processed_input.errors:
            raise ValidationError(f"Input {processed_input.id} touches nothing")
        if self.knowledge is not None:
            for item in processed_input.evidence:
                self.knowledge.validate_evidence(item.evidence)
            for correlation in processed_input.errors:
                self.knowledge.validate_error(correlation.error)

        async with self._write_lock:
            self._idle.clear()
            try:
                committed = await self._merge(processed_input, writes)
            finally:
                self._idle.set()

        if committed is not None and self.settings.autopersist_context:
            await self._save(committed)
        return (committed or self._current).model_copy(deep=True)

    async def _merge(self, processed_input: ProcessedInput, writes) -> Optional[ContextState]:
        current = self._current
        data = current.model_dump()
        stamps = dict(current.field_stamps)
        audit: list[AuditEntry] = []
        applied = 0

        for write in writes:
            rivals = [path for path in stamps if overlaps(path, write.path)]
            newest = max((stamps[p] for p in rivals), key=lambda s: s.timestamp, default=None)

            if newest is not None and processed_input.timestamp < newest.timestamp:
                audit.append(AuditEntry(
                    session_id=self.session_id,
                    path=write.path,
                    losing_input_id=processed_input.id,
                    losing_timestamp=processed_input.timestamp,
                    losing_value=write.value,
                    winning_input_id=newest.input_id,
                    winning_timestamp=newest.timestamp,
                    recorded_at=self.clock(),
                ))
                continue

            for path in rivals:
                audit.append(AuditEntry(
                    session_id=self.session_id,
                    path=path,
                    losing_input_id=stamps[path].input_id,
                    losing_timestamp=stamps[path].timestamp,
                    losing_value=get_value(data, path),
                    winning_input_id=processed_input.id,
                    winning_timestamp=processed_input.timestamp,
                    recorded_at=self.clock(),
                ))
                del stamps[path]

            set_value(data, write)
            stamps[write.path] = FieldStamp(
                timestamp=processed_input.timestamp,
                input_id=processed_input.id,
            )
            applied += 1

        try:
            draft = ContextState.model_validate(data)
        except SchemaError as e:
            raise ValidationError(f"Input {processed_input.id} does not fit {processed_input.path}: {e}") from e

        knowledge_changed = await self._apply_knowledge(processed_input, draft)
        await self._record_audit(audit)

        if not applied and not knowledge_changed:
            return None

        if processed_input.source and processed_input.source not in draft.active_session.adapters:
            draft.active_session.adapters.append(processed_input.source)
        draft.field_stamps = stamps
        draft.version = current.version + 1
        draft.last_updated = self.clock()

        self._current = draft
        self._history.append(draft.model_copy(deep=True))
        logger.debug(
            f"Session {self.session_id} committed v{draft.version} "
            f"({applied} writes, {len(audit)} conflicts)"
        )
        self._publish(draft)
        return draft

    async def _apply_knowledge(self, processed_input: ProcessedInput, draft: ContextState) -> bool:
        """Feed evidence to the graph and mirror the resulting mastery."""
        if self.knowledge is None:
            return False
        touched: dict[str, None] = {}
        for item in processed_input.evidence:
            await self.knowledge.update_mastery(item.concept_id, item.evidence, item.category)
            touched[item.concept_id] = None
        for correlation in processed_input.errors:
            await self.knowledge.correlate_errors(correlation.error, correlation.concepts)
            touched.update(dict.fromkeys(correlation.concepts))
        for concept_id, level in self.knowledge.mastery_summary(list(touched)).items():
            draft.user_state.knowledge[concept_id] = level
        return bool(touched)

    async def _record_audit(self, entries: list[AuditEntry]) -> None:
        for entry in entries:
            conflict = ConflictError(entry.path, entry.losing_input_id, entry.winning_input_id)
            logger.info(f"Session {self.session_id}: {conflict}")
            self._audit.append(entry)
            if self.audit_repository is not None:
                try:
                    await self.audit_repository.save(entry)
                except FatalStorageError as e:
                    self._degrade(e)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_current_context(self, wait: Optional[float] = None) -> ContextSnapshot:
        """The latest committed snapshot.

        Waits at most ``wait`` (default: settings.read_wait_seconds) for an
        in-flight merge; after that the committed version is returned with
        ``in_flight`` and ``stale`` set. A snapshot older than the TTL is
        flagged stale and triggers a refresh request without blocking.
        """
        wait = self.settings.read_wait_seconds if wait is None else wait
        in_flight = False
        if not self._idle.is_set():
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=wait)
            except asyncio.TimeoutError:
                in_flight = True

        state = self._current
        expired = self.clock() - state.last_updated > timedelta(
            seconds=self.settings.context_ttl_seconds
        )
        if expired:
            self._request_refresh(state.version)

        return ContextSnapshot(
            state=state.model_copy(deep=True),
            stale=expired or in_flight,
            in_flight=in_flight,
        )

    @property
    def version(self) -> int:
        """Latest committed version (no copy, no waiting)."""
        return self._current.version

    def history(self) -> list[ContextState]:
        """Every committed version, oldest first."""
        return [state.model_copy(deep=True) for state in self._history]

    def audit_log(self) -> list[AuditEntry]:
        """Every losing write recorded so far."""
        return [entry.model_copy(deep=True) for entry in self._audit]

    def _request_refresh(self, version: int) -> None:
        if self.refresh is None or self._refresh_requested_for == version:
            return
        self._refresh_requested_for = version
        logger.info(f"Session {self.session_id} v{version} is stale; requesting refresh")
        try:
            result = self.refresh(self.session_id, version)
        except Exception:
            logger.exception("Refresh request failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Refresh request failed: {task.exception()}")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe_to_changes(self, callback: ChangeCallback) -> Subscription:
        """Invoke ``callback`` for every committed version, in order.

        The callback may be sync or async. Failures are retried up to
        settings.subscriber_retries times.
        """
        subscription = Subscription(self, callback, self.settings.subscriber_retries)
        self._subscriptions.add(subscription)
        return subscription

    def _publish(self, state: ContextState) -> None:
        if state.version <= self._last_published:
            return
        self._last_published = state.version
        for subscription in list(self._subscriptions):
            subscription.publish(state)

    async def flush(self) -> None:
        """Wait until every subscriber has received every committed version."""
        for subscription in list(self._subscriptions):
            await subscription.drain()

    # =========================================================================
    # Persistence
    # =========================================================================

    async def persist_context(self) -> ContextState:
        """Save the current version.

        Raises:
            FatalStorageError: If the store stays unavailable. The manager
                is marked degraded and keeps serving reads from memory.
        """
        state = self._current.model_copy(deep=True)
        if self.repository is None:
            return state
        try:
            await self.repository.save(state)
        except FatalStorageError as e:
            self._degrade(e)
            raise
        return state

    async def restore_context(self, session_id: Optional[str] = None) -> ContextState:
        """Install the most recently persisted version as current.

        Raises:
            ValidationError: If asked to restore a different session, or if
                the stored version is older than the current one.
            NotFoundError: If nothing was persisted for the session.
        """
        session_id = session_id or self.session_id
        if session_id != self.session_id:
            raise ValidationError(f"Manager for {self.session_id} cannot restore {session_id}")
        if self.repository is None:
            raise ValidationError("No context repository configured")

        async with self._write_lock:
            restored = await self.repository.load(session_id)
            if restored.version < self._current.version:
                raise ValidationError(
                    f"Stored v{restored.version} of {session_id} is older than current v{self._current.version}"
                )
            self._current = restored
            self._history.append(restored.model_copy(deep=True))
            self._publish(restored)
        logger.info(f"Restored session {session_id} at v{restored.version}")
        return restored.model_copy(deep=True)

    async def _save(self, state: ContextState) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.save(state.model_copy(deep=True))
        except FatalStorageError as e:
            self._degrade(e)

    def _degrade(self, error: FatalStorageError) -> None:
        logger.error(f"Context for session {self.session_id} degraded: {error}")
        self.degraded = True
        if self.on_degraded is not None:
            self.on_degraded(error)

    async def close(self) -> None:
        """Stop subscriber delivery and background refreshes."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
