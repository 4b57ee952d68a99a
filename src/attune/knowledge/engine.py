"""KnowledgeGraphEngine - evidence-weighted concept mastery for one user.

Mastery moves by a confidence-weighted exponential update:

    mastery' = mastery + strength * weight * (target - mastery)
    weight   = min_weight + learning_rate * (1 - confidence)
    confidence' = confidence + confidence_step * (1 - confidence)

so early evidence moves mastery more than evidence arriving after many
observations, and confidence rises monotonically toward 1.

Mutations of one concept are serialized by a per-concept lock; different
concepts update concurrently. Edge insertion takes a structural lock since
the cycle check reads many nodes.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional

from attune.core.config import Settings
from attune.core.errors import (
    CycleRejected,
    FatalStorageError,
    InvalidEvidence,
    UnknownConcept,
)
from attune.storage.repository import Repository

from .models import (
    ConceptCategory,
    ConceptNode,
    EdgeKind,
    ErrorSignal,
    EvidenceType,
    MasteryEvidence,
    MasteryLevel,
    utcnow,
)

logger = logging.getLogger(__name__)


def concept_repository_name(user_id: str) -> str:
    """Collection name for a user's concept nodes."""
    return f"concepts:{user_id}"


class KnowledgeGraphEngine:
    """Mutable, evidence-weighted graph of concept mastery.

    Example:
        engine = KnowledgeGraphEngine("user-1", settings)
        await engine.update_mastery("loops", MasteryEvidence(
            type=EvidenceType.CORRECT_USAGE, strength=0.9))
        engine.identify_gaps(["async-iteration"])
    """

    def __init__(
        self,
        user_id: str,
        settings: Optional[Settings] = None,
        repository: Optional[Repository[ConceptNode]] = None,
        on_degraded: Optional[Callable[[FatalStorageError], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the engine.

        Args:
            user_id: Owner of this knowledge graph.
            settings: Tunable constants (defaults to a fresh Settings()).
            repository: Optional store for concept nodes (keyed by id + revision).
            on_degraded: Called when persistence fails past the retry budget.
            clock: Time source, injectable for tests.
        """
        self.user_id = user_id
        self.settings = settings or Settings()
        self.repository = repository
        self.on_degraded = on_degraded
        self.clock = clock
        self.degraded = False

        self._nodes: dict[str, ConceptNode] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._structure_lock = asyncio.Lock()
        self._cooccurrence: dict[tuple[str, str], deque[datetime]] = {}

    # =========================================================================
    # Evidence
    # =========================================================================

    async def update_mastery(
        self,
        concept_id: str,
        evidence: MasteryEvidence,
        category: Optional[ConceptCategory] = None,
    ) -> MasteryLevel:
        """Apply one evidence item to a concept, creating it if absent.

        Re-applying an evidence id already in the concept's log is a no-op,
        so retried deliveries do not double count.

        Raises:
            InvalidEvidence: If strength is outside [0, 1].
        """
        self.validate_evidence(evidence)
        async with self._lock_for(concept_id):
            node = self._ensure_node(concept_id, category)
            if self._apply(node, evidence):
                self._touch(node)
                await self._persist(node)
            return MasteryLevel.from_node(node)

    async def update_mastery_batch(
        self,
        concept_id: str,
        evidence: list[MasteryEvidence],
        category: Optional[ConceptCategory] = None,
    ) -> MasteryLevel:
        """Apply one logical batch of evidence to a concept.

        Every item uses the weight computed at the start of the batch, which
        makes a batch of a single evidence type independent of item order.
        The batch is validated as a whole before anything is applied.
        """
        for item in evidence:
            self.validate_evidence(item)
        async with self._lock_for(concept_id):
            node = self._ensure_node(concept_id, category)
            weight = self._weight(node.confidence)
            changed = False
            for item in evidence:
                changed = self._apply(node, item, weight=weight) or changed
            if changed:
                self._touch(node)
                await self._persist(node)
            return MasteryLevel.from_node(node)

    async def correlate_errors(
        self,
        error: ErrorSignal,
        concept_ids: list[str],
    ) -> list[MasteryLevel]:
        """Record an error against concepts and detect confusion.

        Each concept receives error-pattern evidence. A concept that keeps
        co-occurring with the same error signature within the confusion
        window additionally loses confidence and is flagged confused.
        """
        self.validate_error(error)

        window = timedelta(seconds=self.settings.confusion_window_seconds)
        levels = []
        for concept_id in dict.fromkeys(concept_ids):
            evidence = MasteryEvidence(
                id=f"{error.id}:{concept_id}",
                type=EvidenceType.ERROR_PATTERN,
                strength=error.strength,
                context=f"{error.signature}: {error.context}" if error.context else error.signature,
                timestamp=error.timestamp,
            )
            async with self._lock_for(concept_id):
                node = self._ensure_node(concept_id)
                if self._apply(node, evidence):
                    self._record_cooccurrence(node, error.signature, window)
                    self._touch(node)
                    await self._persist(node)
                levels.append(MasteryLevel.from_node(node))
        return levels

    def _record_cooccurrence(
        self, node: ConceptNode, signature: str, window: timedelta
    ) -> None:
        """Track signature/concept co-occurrence and apply the confusion penalty."""
        now = self.clock()
        seen = self._cooccurrence.setdefault((signature, node.id), deque())
        seen.append(now)
        while seen and now - seen[0] > window:
            seen.popleft()

        if len(seen) >= self.settings.confusion_threshold:
            node.confidence = node.confidence * (1.0 - self.settings.confusion_penalty)
            if not node.confused:
                logger.info(
                    f"Concept {node.id} confused by '{signature}' "
                    f"({len(seen)} times within {window})"
                )
            node.confused = True

    def validate_evidence(self, evidence: MasteryEvidence) -> None:
        """Reject evidence whose strength is outside [0, 1]."""
        if not 0.0 <= evidence.strength <= 1.0:
            logger.warning(f"Rejected evidence {evidence.id}: strength {evidence.strength}")
            raise InvalidEvidence(
                f"Evidence strength must be within [0, 1], got {evidence.strength}"
            )

    def validate_error(self, error: ErrorSignal) -> None:
        """Reject error signals whose strength is outside [0, 1]."""
        if not 0.0 <= error.strength <= 1.0:
            logger.warning(f"Rejected error signal {error.id}: strength {error.strength}")
            raise InvalidEvidence(
                f"Error strength must be within [0, 1], got {error.strength}"
            )

    def _weight(self, confidence: float) -> float:
        return self.settings.min_weight + self.settings.learning_rate * (1.0 - confidence)

    def _apply(
        self,
        node: ConceptNode,
        evidence: MasteryEvidence,
        weight: Optional[float] = None,
    ) -> bool:
        """Apply evidence in place. Returns False for an already-applied id."""
        if node.has_evidence(evidence.id):
            logger.debug(f"Evidence {evidence.id} already applied to {node.id}")
            return False

        if weight is None:
            weight = self._weight(node.confidence)

        target = evidence.type.target
        if target is not None:
            delta = evidence.strength * min(weight, 1.0) * (target - node.mastery)
            node.mastery = min(1.0, max(0.0, node.mastery + delta))

        node.confidence = min(
            1.0, node.confidence + self.settings.confidence_step * (1.0 - node.confidence)
        )
        if evidence.type == EvidenceType.SUCCESSFUL_APPLICATION:
            node.confused = False

        node.evidence.append(evidence)
        overflow = len(node.evidence) - self.settings.evidence_log_size
        if overflow > 0:
            del node.evidence[:overflow]
        node.evidence_count += 1
        return True

    # =========================================================================
    # Structure
    # =========================================================================

    async def add_prerequisite(
        self,
        concept_id: str,
        prerequisite_id: str,
        kind: EdgeKind = EdgeKind.HARD,
    ) -> None:
        """Record that ``prerequisite_id`` comes before ``concept_id``.

        Soft edges are accepted unconditionally. A hard edge that would close
        a cycle in the hard subgraph is dropped.

        Raises:
            CycleRejected: If the hard edge would create a cycle.
        """
        async with self._structure_lock:
            if kind == EdgeKind.HARD:
                path = self._hard_path(prerequisite_id, concept_id)
                if path is not None:
                    logger.warning(
                        f"Dropped hard edge {prerequisite_id} -> {concept_id}: cycle"
                    )
                    raise CycleRejected(concept_id, prerequisite_id, path + [prerequisite_id])

            concept = self._ensure_node(concept_id)
            prerequisite = self._ensure_node(prerequisite_id)
            concept.prerequisites[prerequisite_id] = kind
            prerequisite.dependents[concept_id] = kind
            self._touch(concept)
            self._touch(prerequisite)
            await self._persist(concept, prerequisite)

    def _hard_path(self, start: str, goal: str) -> Optional[list[str]]:
        """Hard-prerequisite path from ``start`` up to ``goal``, if one exists."""
        stack = [(start, [start])]
        seen = set()
        while stack:
            current, path = stack.pop()
            if current == goal:
                return path
            if current in seen:
                continue
            seen.add(current)
            node = self._nodes.get(current)
            if node is None:
                continue
            for prerequisite in node.hard_prerequisites():
                stack.append((prerequisite, path + [prerequisite]))
        return None

    async def deactivate(self, concept_id: str) -> None:
        """Mark a concept inactive. Concepts are never hard-deleted."""
        if concept_id not in self._nodes:
            raise UnknownConcept(concept_id)
        async with self._lock_for(concept_id):
            node = self._nodes[concept_id]
            if node.active:
                node.active = False
                self._touch(node)
                await self._persist(node)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_mastery_level(self, concept_id: str) -> MasteryLevel:
        """Current mastery; a zero-confidence default for unseen concepts."""
        node = self._nodes.get(concept_id)
        if node is None:
            return MasteryLevel(concept_id=concept_id)
        return MasteryLevel.from_node(node)

    def get_prerequisites(self, concept_id: str) -> list[str]:
        """Direct hard prerequisites of a concept.

        Raises:
            UnknownConcept: If the concept was never created.
        """
        node = self._nodes.get(concept_id)
        if node is None:
            raise UnknownConcept(concept_id)
        return node.hard_prerequisites()

    def identify_gaps(self, required_concepts: list[str]) -> list[str]:
        """Concepts below the gap threshold needed for the required ones.

        Walks hard prerequisites transitively from each required concept and
        returns every concept (required ones included) whose mastery is below
        the threshold, prerequisites before dependents. Inactive concepts are
        skipped; unseen ones count as zero mastery.
        """
        ordered: list[str] = []
        visited: set[str] = set()

        for root in required_concepts:
            if root in visited:
                continue
            visited.add(root)
            stack = [(root, iter(self._hard_prerequisites_of(root)))]
            while stack:
                concept_id, remaining = stack[-1]
                prerequisite = next((p for p in remaining if p not in visited), None)
                if prerequisite is None:
                    stack.pop()
                    ordered.append(concept_id)
                    continue
                visited.add(prerequisite)
                stack.append((prerequisite, iter(self._hard_prerequisites_of(prerequisite))))

        return [concept_id for concept_id in ordered if self._is_gap(concept_id)]

    def _hard_prerequisites_of(self, concept_id: str) -> list[str]:
        node = self._nodes.get(concept_id)
        return node.hard_prerequisites() if node is not None else []

    def _is_gap(self, concept_id: str) -> bool:
        node = self._nodes.get(concept_id)
        if node is None:
            return True
        return node.active and node.mastery < self.settings.gap_threshold

    def confused_concepts(self) -> list[str]:
        """Ids of active concepts currently flagged confused."""
        return [n.id for n in self._nodes.values() if n.active and n.confused]

    def mastery_summary(self, concept_ids: list[str]) -> dict[str, MasteryLevel]:
        """Mastery levels for several concepts at once."""
        return {cid: self.get_mastery_level(cid) for cid in concept_ids}

    def get_node(self, concept_id: str) -> ConceptNode:
        """A copy of one concept node.

        Raises:
            UnknownConcept: If the concept was never created.
        """
        node = self._nodes.get(concept_id)
        if node is None:
            raise UnknownConcept(concept_id)
        return node.model_copy(deep=True)

    def snapshot(self) -> list[ConceptNode]:
        """Copies of every node."""
        return [node.model_copy(deep=True) for node in self._nodes.values()]

    def __contains__(self, concept_id: str) -> bool:
        return concept_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    # =========================================================================
    # Persistence
    # =========================================================================

    def restore(self, nodes: list[ConceptNode]) -> None:
        """Install nodes (e.g. loaded from storage), replacing current ones.

        Dependents are rebuilt from prerequisites so the two stay inverse.
        """
        self._nodes = {node.id: node.model_copy(deep=True) for node in nodes}
        for node in self._nodes.values():
            node.dependents = {}
        for node in list(self._nodes.values()):
            for prerequisite_id, kind in node.prerequisites.items():
                self._ensure_node(prerequisite_id).dependents[node.id] = kind

    async def load(self) -> int:
        """Load this user's nodes from the repository. Returns the count."""
        if self.repository is None:
            return 0
        try:
            nodes = await self.repository.query(lambda node: True)
        except FatalStorageError as e:
            self._degrade(e)
            return 0
        self.restore(nodes)
        logger.info(f"Loaded {len(nodes)} concepts for user {self.user_id}")
        return len(nodes)

    async def _persist(self, *nodes: ConceptNode) -> None:
        if self.repository is None:
            return
        try:
            for node in nodes:
                await self.repository.save(node.model_copy(deep=True))
        except FatalStorageError as e:
            self._degrade(e)

    def _degrade(self, error: FatalStorageError) -> None:
        logger.error(f"Knowledge graph for {self.user_id} degraded: {error}")
        self.degraded = True
        if self.on_degraded is not None:
            self.on_degraded(error)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_for(self, concept_id: str) -> asyncio.Lock:
        lock = self._locks.get(concept_id)
        if lock is None:
            lock = self._locks[concept_id] = asyncio.Lock()
        return lock

    def _ensure_node(
        self, concept_id: str, category: Optional[ConceptCategory] = None
    ) -> ConceptNode:
        node = self._nodes.get(concept_id)
        if node is None:
            node = ConceptNode(
                id=concept_id,
                category=category or ConceptCategory.GENERAL,
                created_at=self.clock(),
                updated_at=self.clock(),
            )
            self._nodes[concept_id] = node
            logger.debug(f"Created concept {concept_id} for user {self.user_id}")
        return node

    def _touch(self, node: ConceptNode) -> None:
        node.revision += 1
        node.updated_at = self.clock()
