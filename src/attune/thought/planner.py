"""Intervention planning: deduplication, rate limiting, cool-downs.

The planner owns every intervention of one session. Problems are ordered
by severity (descending) then age of the root cause (oldest first).
A problem whose signature already has a pending intervention is merged
into it; one whose signature is cooling down or awaiting a user response
is suppressed. New interventions are queued while the rolling window has
room and otherwise stay planned for the next cycle.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from attune.core.config import Settings
from attune.core.errors import NotFoundError
from attune.knowledge.models import utcnow

from .models import (
    Intervention,
    InterventionKind,
    InterventionStatus,
    PlanningStep,
    Problem,
    ProblemType,
    Severity,
    UserResponse,
)

logger = logging.getLogger(__name__)

KIND_FOR_PROBLEM = {
    ProblemType.KNOWLEDGE_GAP: InterventionKind.LESSON,
    ProblemType.ARCHITECTURAL_FLAW: InterventionKind.DIAGRAM,
    ProblemType.LOGICAL_ERROR: InterventionKind.CODE_FIX,
    ProblemType.SECURITY: InterventionKind.CODE_FIX,
    ProblemType.PERFORMANCE: InterventionKind.HINT,
}


def intervention_kind(problem: Problem) -> InterventionKind:
    """Pick the payload kind for a problem.

    Severe performance problems get a code fix rather than a hint.
    """
    if problem.type == ProblemType.PERFORMANCE and problem.severity.rank >= Severity.HIGH.rank:
        return InterventionKind.CODE_FIX
    return KIND_FOR_PROBLEM[problem.type]


def priority_key(problem: Problem) -> tuple[int, datetime]:
    """Sort key: severity descending, then oldest root cause first."""
    return (-problem.severity.rank, problem.first_seen)


class RollingWindowLimiter:
    """At most ``max_events`` deliveries per rolling ``window``."""

    def __init__(self, max_events: int, window: timedelta):
        self.max_events = max_events
        self.window = window
        self._events: deque[datetime] = deque()

    def _prune(self, now: datetime) -> None:
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    def available(self, now: datetime) -> int:
        self._prune(now)
        return max(0, self.max_events - len(self._events))

    def try_acquire(self, now: datetime) -> bool:
        """Record one delivery if the window has room."""
        if self.available(now) <= 0:
            return False
        self._events.append(now)
        return True

    def restore(self, deliveries: list[datetime]) -> None:
        """Re-record past deliveries, e.g. after a restart."""
        self._events = deque(sorted([*self._events, *deliveries]))


class CooldownTracker:
    """Per-signature cool-downs with exponential backoff on dismissal.

    The n-th consecutive dismissal of a signature blocks it for
    ``base * 2**(n-1)`` seconds, capped at ``maximum``. Acceptance resets the
    count and applies the base cool-down; an expiry applies the base
    cool-down without touching the count.
    """

    def __init__(self, base: timedelta, maximum: timedelta):
        self.base = base
        self.maximum = maximum
        self._until: dict[str, datetime] = {}
        self._dismissals: dict[str, int] = {}

    def blocked(self, signature: str, now: datetime) -> bool:
        until = self._until.get(signature)
        return until is not None and now < until

    def until(self, signature: str) -> Optional[datetime]:
        return self._until.get(signature)

    def dismissals(self, signature: str) -> int:
        return self._dismissals.get(signature, 0)

    def record_response(self, signature: str, response: UserResponse, now: datetime) -> datetime:
        if response == UserResponse.DISMISSED:
            count = self._dismissals.get(signature, 0) + 1
            self._dismissals[signature] = count
            delay = min(self.base * (2 ** (count - 1)), self.maximum)
        else:
            self._dismissals.pop(signature, None)
            delay = self.base
        self._until[signature] = now + delay
        return self._until[signature]

    def record_expiry(self, signature: str, now: datetime) -> datetime:
        self._until[signature] = now + self.base
        return self._until[signature]


@dataclass
class PlanResult:
    """Interventions ready for execution, in priority order, plus the trace step."""

    queued: list[Intervention] = field(default_factory=list)
    step: PlanningStep = field(default_factory=PlanningStep)


class InterventionPlanner:
    """Turns problems into scheduled interventions for one session."""

    def __init__(
        self,
        session_id: str,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_id = session_id
        self.settings = settings or Settings()
        self.clock = clock
        self.limiter = RollingWindowLimiter(
            self.settings.rate_limit_count,
            timedelta(seconds=self.settings.rate_limit_window_seconds),
        )
        self.cooldowns = CooldownTracker(
            timedelta(seconds=self.settings.cooldown_base_seconds),
            timedelta(seconds=self.settings.cooldown_max_seconds),
        )
        self._interventions: dict[str, Intervention] = {}
        self._active: dict[str, str] = {}  # signature -> non-terminal intervention id

    # =========================================================================
    # Planning
    # =========================================================================

    def plan(self, problems: list[Problem]) -> PlanResult:
        """Schedule interventions for this cycle's problems.

        Returns:
            Every queued intervention (new and carried over) in priority
            order, and a PlanningStep describing the decisions.
        """
        now = self.clock()
        result = PlanResult()

        for problem in sorted(problems, key=priority_key):
            signature = problem.signature
            existing = self.active_for(signature)

            if existing is not None:
                if existing.is_pending:
                    existing.merge_problem(problem)
                    result.step.merged.append(signature)
                else:
                    result.step.suppressed.append(signature)
                continue

            if self.cooldowns.blocked(signature, now):
                logger.debug(f"Suppressed {signature} until {self.cooldowns.until(signature)}")
                result.step.suppressed.append(signature)
                continue

            intervention = Intervention(
                session_id=self.session_id,
                problem=problem,
                signature=signature,
                kind=intervention_kind(problem),
                scheduled_at=now,
            )
            self._interventions[intervention.id] = intervention
            self._active[signature] = intervention.id

        pending = sorted(self.pending(), key=lambda i: priority_key(i.problem))
        capacity = self.limiter.available(now) - sum(
            1 for i in pending if i.status == InterventionStatus.QUEUED
        )
        for intervention in pending:
            if intervention.status == InterventionStatus.PLANNED:
                if capacity <= 0:
                    result.step.deferred.append(intervention.signature)
                    continue
                intervention.queue(now)
                capacity -= 1
                result.step.queued.append(intervention.id)
            result.queued.append(intervention)

        if result.step.deferred:
            logger.info(
                f"Session {self.session_id}: rate limit reached, "
                f"{len(result.step.deferred)} interventions deferred"
            )
        return result

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def record_response(self, intervention: Intervention, response: UserResponse) -> datetime:
        """Apply a user response and return when the signature may recur."""
        now = self.clock()
        intervention.respond(response, now)
        self._release(intervention)
        return self.cooldowns.record_response(intervention.signature, response, now)

    def expire_stale(self) -> list[Intervention]:
        """Expire delivered interventions with no response within the TTL."""
        now = self.clock()
        ttl = timedelta(seconds=self.settings.intervention_ttl_seconds)
        expired = []
        for intervention in list(self._interventions.values()):
            if intervention.status != InterventionStatus.DELIVERED:
                continue
            if now - intervention.delivered_at < ttl:
                continue
            intervention.expire()
            self._release(intervention)
            self.cooldowns.record_expiry(intervention.signature, now)
            expired.append(intervention)
        return expired

    def discard_pending(self) -> list[Intervention]:
        """Discard every planned or queued intervention."""
        discarded = []
        for intervention in self.pending():
            intervention.discard()
            self._release(intervention)
            discarded.append(intervention)
        return discarded

    def _release(self, intervention: Intervention) -> None:
        if self._active.get(intervention.signature) == intervention.id:
            del self._active[intervention.signature]

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, intervention_id: str) -> Intervention:
        intervention = self._interventions.get(intervention_id)
        if intervention is None:
            raise NotFoundError("intervention", intervention_id)
        return intervention

    def active_for(self, signature: str) -> Optional[Intervention]:
        intervention_id = self._active.get(signature)
        return self._interventions[intervention_id] if intervention_id else None

    def pending(self) -> list[Intervention]:
        return [i for i in self._interventions.values() if i.is_pending]

    def interventions(self) -> list[Intervention]:
        return list(self._interventions.values())

    def problems(self) -> list[Problem]:
        """Problems behind every non-terminal intervention, highest priority first."""
        active = [self._interventions[i] for i in self._active.values()]
        return sorted((i.problem for i in active), key=priority_key)

    def load(self, interventions: list[Intervention]) -> None:
        """Reinstall persisted interventions (e.g. after a restart).

        Cool-downs and the delivery window are rebuilt by replaying the
        stored responses, expiries and deliveries in time order.
        """
        ttl = timedelta(seconds=self.settings.intervention_ttl_seconds)
        outcomes: list[tuple[datetime, Intervention]] = []
        deliveries = []
        for intervention in interventions:
            self._interventions[intervention.id] = intervention
            if not intervention.is_terminal:
                self._active[intervention.signature] = intervention.id
            if intervention.delivered_at is not None:
                deliveries.append(intervention.delivered_at)
            if intervention.user_response is not None and intervention.responded_at is not None:
                outcomes.append((intervention.responded_at, intervention))
            elif intervention.status == InterventionStatus.EXPIRED and intervention.delivered_at is not None:
                outcomes.append((intervention.delivered_at + ttl, intervention))

        for at, intervention in sorted(outcomes, key=lambda outcome: outcome[0]):
            if intervention.status == InterventionStatus.EXPIRED:
                self.cooldowns.record_expiry(intervention.signature, at)
            else:
                self.cooldowns.record_response(intervention.signature, intervention.user_response, at)
        self.limiter.restore(deliveries)
