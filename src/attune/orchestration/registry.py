"""Session registry - one runtime per live session.

A SessionRuntime bundles the ContextStateManager, the user's
KnowledgeGraphEngine and the session's ThoughtLoop. Sessions of the same
user share one engine, so per-concept locking covers all of them.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from attune.context.manager import ContextStateManager, RefreshCallback, context_key
from attune.context.models import AuditEntry, ContextState
from attune.core.config import Settings
from attune.core.errors import FatalStorageError, NotFoundError, ValidationError
from attune.knowledge.engine import KnowledgeGraphEngine, concept_repository_name
from attune.knowledge.models import ConceptNode
from attune.storage.repository import Repository, RetryingRepository
from attune.storage.sqlite import SQLiteStore
from attune.thought.generators import ContentGenerator
from attune.thought.loop import DeliverySink, ThoughtLoop
from attune.thought.models import Intervention, InterventionKind, ReasoningTrace

logger = logging.getLogger(__name__)


@dataclass
class SessionRuntime:
    """Everything that belongs to one live session."""

    session_id: str
    user_id: str
    context: ContextStateManager
    knowledge: KnowledgeGraphEngine
    loop: ThoughtLoop

    @property
    def degraded(self) -> bool:
        return self.context.degraded or self.knowledge.degraded or self.loop.degraded


class SessionRegistry:
    """Explicit registry of session runtimes.

    Example:
        registry = SessionRegistry(settings, store=SQLiteStore(settings.db_path))
        runtime = await registry.get_or_create("session-1", "user-1")
        runtime.loop.start_monitoring()
        ...
        await registry.shutdown()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[SQLiteStore] = None,
        generators: Optional[dict[InterventionKind, ContentGenerator]] = None,
        delivery_sink: Optional[DeliverySink] = None,
        refresh: Optional[RefreshCallback] = None,
    ):
        """Initialize the registry.

        Args:
            settings: Shared tunable constants.
            store: Backing store; without one everything stays in memory.
            generators: Payload generators handed to every thought loop.
            delivery_sink: Receives every delivered intervention.
            refresh: Asked to re-observe a session whose context went stale.
        """
        self.settings = settings or Settings()
        self.store = store
        self.generators = generators or {}
        self.delivery_sink = delivery_sink
        self.refresh = refresh
        self._runtimes: dict[str, SessionRuntime] = {}
        self._engines: dict[str, KnowledgeGraphEngine] = {}
        self._lock = asyncio.Lock()

    def _repository(self, collection: str, model, **kwargs) -> Optional[Repository]:
        if self.store is None:
            return None
        return RetryingRepository(
            self.store.repository(collection, model, **kwargs),
            attempts=self.settings.storage_retry_attempts,
            backoff=self.settings.storage_retry_backoff_seconds,
        )

    def _pause_user(self, user_id: str) -> Callable[[FatalStorageError], None]:
        def pause(error: FatalStorageError) -> None:
            for runtime in self._runtimes.values():
                if runtime.user_id == user_id and not runtime.loop.degraded:
                    runtime.loop.enter_degraded(error)
        return pause

    def _pause_session(self, session_id: str) -> Callable[[FatalStorageError], None]:
        def pause(error: FatalStorageError) -> None:
            runtime = self._runtimes.get(session_id)
            if runtime is not None and not runtime.loop.degraded:
                runtime.loop.enter_degraded(error)
        return pause

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def get_or_create(self, session_id: str, user_id: str) -> SessionRuntime:
        """Get a live session, creating it on first use.

        A new session loads the user's concept nodes and the last persisted
        context of the session, if any.

        Raises:
            ValidationError: If the session exists for a different user.
        """
        async with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is not None:
                if runtime.user_id != user_id:
                    raise ValidationError(
                        f"Session {session_id} belongs to {runtime.user_id}, not {user_id}"
                    )
                return runtime

            knowledge = self._engines.get(user_id)
            if knowledge is None:
                knowledge = KnowledgeGraphEngine(
                    user_id,
                    self.settings,
                    repository=self._repository(
                        concept_repository_name(user_id),
                        ConceptNode,
                        version=lambda node: node.revision,
                    ),
                    on_degraded=self._pause_user(user_id),
                )
                await knowledge.load()
                self._engines[user_id] = knowledge

            context = ContextStateManager(
                session_id,
                user_id,
                self.settings,
                knowledge=knowledge,
                repository=self._repository("contexts", ContextState, key=context_key),
                audit_repository=self._repository("audit", AuditEntry),
                refresh=self.refresh,
                on_degraded=self._pause_session(session_id),
            )
            if context.repository is not None:
                try:
                    await context.restore_context()
                except NotFoundError:
                    logger.debug(f"No persisted context for session {session_id}")
                except FatalStorageError as e:
                    logger.error(f"Could not restore session {session_id}: {e}")

            loop = ThoughtLoop(
                session_id,
                context,
                knowledge,
                self.settings,
                generators=self.generators,
                intervention_repository=self._repository(
                    "interventions",
                    Intervention,
                    version=lambda intervention: intervention.revision,
                ),
                trace_repository=self._repository("traces", ReasoningTrace),
                delivery_sink=self.delivery_sink,
            )
            try:
                await loop.load()
            except FatalStorageError as e:
                loop.enter_degraded(e)

            runtime = SessionRuntime(session_id, user_id, context, knowledge, loop)
            self._runtimes[session_id] = runtime
            logger.info(f"Created session {session_id} for user {user_id}")
            return runtime

    def get(self, session_id: str) -> SessionRuntime:
        """Get a live session.

        Raises:
            NotFoundError: If the session is not live.
        """
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise NotFoundError("session", session_id)
        return runtime

    def sessions(self) -> list[SessionRuntime]:
        return list(self._runtimes.values())

    async def close(self, session_id: str) -> None:
        """Stop the loop, persist the context, and forget the session.

        Raises:
            NotFoundError: If the session is not live.
        """
        async with self._lock:
            runtime = self.get(session_id)
            await runtime.loop.shutdown()
            try:
                await runtime.context.persist_context()
            except FatalStorageError as e:
                logger.error(f"Session {session_id} closed without persisting: {e}")
            await runtime.context.close()
            del self._runtimes[session_id]

            if not any(r.user_id == runtime.user_id for r in self._runtimes.values()):
                self._engines.pop(runtime.user_id, None)
            logger.info(f"Closed session {session_id}")

    async def shutdown(self) -> None:
        """Close every live session."""
        for session_id in list(self._runtimes):
            await self.close(session_id)
