"""Error taxonomy for Attune.

- ValidationError: bad evidence or input. Rejected, no state change.
- NotFoundError: unknown id. Returned to the caller, never fatal.
- ConflictError: losing side of a concurrent write. Audited, not raised.
- GenerationError: external generator failure. Triggers the template fallback.
- CycleRejected: hard prerequisite edge would create a cycle. Edge dropped.
- StorageUnavailable: transient store failure, retried.
- FatalStorageError: store unavailable past the retry budget. The session
  enters degraded mode.
"""

from typing import Any, Optional


class AttuneError(Exception):
    """Base class for all Attune errors."""


class ValidationError(AttuneError):
    """Input was rejected before any state changed."""


class InvalidEvidence(ValidationError):
    """Mastery evidence is malformed (e.g. strength outside [0, 1])."""


class InvalidTransition(ValidationError):
    """An intervention lifecycle transition is not allowed."""

    def __init__(self, intervention_id: str, current: str, target: str):
        self.intervention_id = intervention_id
        self.current = current
        self.target = target
        super().__init__(
            f"Intervention {intervention_id} cannot move from {current} to {target}"
        )


class NotFoundError(AttuneError):
    """An entity with the given id does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class UnknownConcept(NotFoundError):
    """The concept id was never created in the knowledge graph."""

    def __init__(self, concept_id: str):
        super().__init__("Concept", concept_id)


class ConflictError(AttuneError):
    """A concurrent write lost a last-writer-wins resolution."""

    def __init__(self, path: str, loser_id: Optional[str], winner_id: Optional[str]):
        self.path = path
        self.loser_id = loser_id
        self.winner_id = winner_id
        super().__init__(f"Write {loser_id} on {path} lost to {winner_id}")


class CycleRejected(AttuneError):
    """A hard prerequisite edge would create a cycle and was dropped."""

    def __init__(self, concept_id: str, prerequisite_id: str, path: list[str]):
        self.concept_id = concept_id
        self.prerequisite_id = prerequisite_id
        self.path = path
        super().__init__(
            f"Hard prerequisite {prerequisite_id} -> {concept_id} rejected: "
            f"would close cycle {' -> '.join(path)}"
        )


class GenerationError(AttuneError):
    """An external content/code/diagram generator failed."""

    def __init__(self, generator: str, reason: str, detail: Any = None):
        self.generator = generator
        self.reason = reason
        self.detail = detail
        super().__init__(f"{generator} failed: {reason}")


class StorageUnavailable(AttuneError):
    """A repository call failed in a way that may succeed on retry."""


class FatalStorageError(AttuneError):
    """A repository stayed unavailable past the retry budget."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")
