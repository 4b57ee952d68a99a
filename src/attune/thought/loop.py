"""ThoughtLoop - the autonomous monitor of one session.

Each cycle reads the latest snapshot and moves through
Analyzing -> Detecting -> Planning -> Executing before returning to Idle.
Cycles run on a periodic tick and whenever the context publishes a new
version; a tick that finds no new version skips analysis. Stopping is
observed before the next tick and before execution. Every delivery and
every user response leaves an immutable ReasoningTrace.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from attune.context.manager import ContextStateManager, Subscription
from attune.context.models import ContextSnapshot, ContextState
from attune.core.config import Settings
from attune.core.errors import FatalStorageError, GenerationError, InvalidTransition, NotFoundError
from attune.knowledge.engine import KnowledgeGraphEngine
from attune.knowledge.models import EvidenceType, MasteryEvidence, utcnow
from attune.storage.repository import Repository

from .analysis import ContextAnalyzer
from .detectors import Detector, run_detectors
from .generators import ContentGenerator, GenerationRequest, GenerationResult, TemplateGenerator
from .models import (
    Analysis,
    AnalysisStep,
    Explanation,
    FeedbackStep,
    GenerationStep,
    Intervention,
    InterventionKind,
    InterventionStatus,
    LoopState,
    Problem,
    ProblemType,
    ReasoningStep,
    ReasoningTrace,
    UserResponse,
)
from .planner import InterventionPlanner

logger = logging.getLogger(__name__)

DeliverySink = Callable[[Intervention], Union[None, Awaitable[None]]]

ACCEPTED_LESSON_STRENGTH = 0.5


def _analysis_step(analysis: Analysis) -> AnalysisStep:
    return AnalysisStep(
        error_count=len(analysis.errors),
        gap_count=len(analysis.knowledge_gaps),
        finding_count=len(analysis.security_findings),
        slow_component_count=len(analysis.slow_components),
        cycle_count=len(analysis.dependency_cycles),
        incomplete=analysis.incomplete,
    )


class ThoughtLoop:
    """Autonomous analysis and intervention loop for one session.

    Example:
        loop = ThoughtLoop("session-1", context, knowledge, settings)
        loop.start_monitoring()
        ...
        await loop.record_response(intervention_id, UserResponse.ACCEPTED)
        loop.stop_monitoring()
    """

    def __init__(
        self,
        session_id: str,
        context: ContextStateManager,
        knowledge: KnowledgeGraphEngine,
        settings: Optional[Settings] = None,
        generators: Optional[dict[InterventionKind, ContentGenerator]] = None,
        fallback: Optional[ContentGenerator] = None,
        detectors: Optional[list[Detector]] = None,
        analyzer: Optional[ContextAnalyzer] = None,
        intervention_repository: Optional[Repository[Intervention]] = None,
        trace_repository: Optional[Repository[ReasoningTrace]] = None,
        delivery_sink: Optional[DeliverySink] = None,
        on_degraded: Optional[Callable[[FatalStorageError], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the loop.

        Args:
            session_id: Session being monitored.
            context: Source of snapshots and change notifications.
            knowledge: Graph queried during analysis and fed by feedback.
            settings: Tunable constants.
            generators: Payload generator per intervention kind.
            fallback: Used when a generator is missing, fails, or times out.
            detectors: Detector chain (defaults to the fixed built-in order).
            analyzer: Analysis stage (defaults to ContextAnalyzer).
            intervention_repository: Store for interventions (keyed by id + revision).
            trace_repository: Store for reasoning traces.
            delivery_sink: Receives each delivered intervention (push channel).
            on_degraded: Called when persistence fails past the retry budget.
            clock: Time source, injectable for tests.
        """
        self.session_id = session_id
        self.context = context
        self.knowledge = knowledge
        self.settings = settings or Settings()
        self.generators = generators or {}
        self.fallback = fallback or TemplateGenerator()
        self.detectors = detectors
        self.analyzer = analyzer or ContextAnalyzer(knowledge, self.settings)
        self.intervention_repository = intervention_repository
        self.trace_repository = trace_repository
        self.delivery_sink = delivery_sink
        self.on_degraded = on_degraded
        self.clock = clock

        self.planner = InterventionPlanner(session_id, self.settings, clock)
        self.state = LoopState.IDLE
        self.degraded = False
        self.cycles = 0
        self._last_version: Optional[int] = None
        self._traces: dict[str, ReasoningTrace] = {}
        self._wake = asyncio.Event()
        self._resume = asyncio.Event()
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    # =========================================================================
    # Monitoring control
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_requested

    def start_monitoring(self) -> None:
        """Start (or resume) the loop. Clears a previous degraded pause."""
        self._stop_requested = False
        self.degraded = False
        if self.state == LoopState.PAUSED:
            self.state = LoopState.IDLE
        self._resume.set()

        if self._subscription is None:
            self._subscription = self.context.subscribe_to_changes(self._on_context_change)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        self._wake.set()
        logger.info(f"Monitoring started for session {self.session_id}")

    def stop_monitoring(self) -> None:
        """Pause the loop.

        A cycle in progress finishes its planning but does not execute.
        When configured, planned and queued interventions are discarded.
        """
        self._stop_requested = True
        self._resume.clear()
        if self.state == LoopState.IDLE:
            self.state = LoopState.PAUSED
        if self.settings.discard_queued_on_stop and self.state == LoopState.PAUSED:
            self._discard_pending("monitoring stopped")
        self._wake.set()
        logger.info(f"Monitoring stopped for session {self.session_id}")

    async def shutdown(self) -> None:
        """Stop for good: cancel the loop task and drop the subscription."""
        self._stop_requested = True
        self.state = LoopState.PAUSED
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _on_context_change(self, state: ContextState) -> None:
        self._wake.set()

    async def _run(self) -> None:
        while True:
            if self._stop_requested:
                self.state = LoopState.PAUSED
                await self._resume.wait()
                continue

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stop_requested:
                continue

            try:
                await self.run_cycle()
            except Exception:
                logger.exception(f"Thought cycle failed for session {self.session_id}")
                self.state = LoopState.PAUSED if self._stop_requested else LoopState.IDLE

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> Optional[ReasoningTrace]:
        """Run one full cycle against the latest snapshot.

        Returns:
            The cycle's trace, or None when there was no new version to analyze.
        """
        started = time.perf_counter()
        await self._expire_stale()

        snapshot = await self.context.get_current_context()
        if snapshot.version == self._last_version:
            # Nothing new to analyze; still deliver interventions held back by the rate limiter
            if not self._stop_requested and not self.degraded and self.planner.pending():
                self.state = LoopState.EXECUTING
                await self._execute_queued(self.planner.plan([]).queued)
                if self._stop_requested and not self.degraded and self.settings.discard_queued_on_stop:
                    self._discard_pending("monitoring stopped during delivery")
                self.state = LoopState.PAUSED if self._stop_requested else LoopState.IDLE
            return None
        self._last_version = snapshot.version
        self.cycles += 1

        self.state = LoopState.ANALYZING
        analysis = await self.analyze_context(snapshot)

        self.state = LoopState.DETECTING
        report = run_detectors(analysis, self.detectors)

        self.state = LoopState.PLANNING
        plan = self.planner.plan(report.problems)
        steps: list[ReasoningStep] = [_analysis_step(analysis), *report.steps, plan.step]

        if self._stop_requested:
            decision = "stopped before execution"
        else:
            self.state = LoopState.EXECUTING
            delivered = await self._execute_queued(plan.queued, snapshot.version)
            decision = (
                f"{len(report.problems)} problems, {len(plan.step.queued)} queued, "
                f"{len(delivered)} delivered, {len(plan.step.deferred)} deferred"
            )
        if self._stop_requested and not self.degraded and self.settings.discard_queued_on_stop:
            self._discard_pending("monitoring stopped during the cycle")

        self.state = LoopState.PAUSED if self._stop_requested else LoopState.IDLE
        trace = ReasoningTrace(
            session_id=self.session_id,
            snapshot_version=snapshot.version,
            steps=steps,
            final_decision=decision,
            confidence=0.5 if analysis.incomplete else 1.0,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        await self._record_trace(trace)
        logger.info(f"Session {self.session_id} cycle on v{snapshot.version}: {decision}")
        return trace

    async def analyze_context(self, snapshot: ContextSnapshot | ContextState) -> Analysis:
        """Analyze a snapshot without side effects."""
        return await self.analyzer.analyze(snapshot)

    def detect_problems(self, analysis: Analysis) -> list[Problem]:
        """Run every detector over an analysis; failures are isolated."""
        return run_detectors(analysis, self.detectors).problems

    def plan_interventions(self, problems: list[Problem]) -> list[Intervention]:
        """Schedule interventions and return the queued ones in priority order."""
        return self.planner.plan(problems).queued

    async def _execute_queued(
        self,
        queued: list[Intervention],
        snapshot_version: Optional[int] = None,
    ) -> list[Intervention]:
        delivered = []
        for intervention in queued:
            if self._stop_requested or self.degraded:
                break
            result = await self.execute_intervention(intervention, snapshot_version)
            if result.status != InterventionStatus.DELIVERED:
                break  # Rate limit reached; the rest stay queued
            delivered.append(result)
        return delivered

    async def execute_intervention(
        self,
        intervention: Intervention,
        snapshot_version: Optional[int] = None,
    ) -> Intervention:
        """Generate and deliver one queued intervention.

        The generator runs under a timeout; on failure or timeout the
        template fallback is used and the trace says so. If the rate limit
        has no room, or monitoring stopped while the payload was being
        generated, the intervention is returned undelivered.

        Raises:
            InvalidTransition: If the intervention is not queued.
        """
        if intervention.status != InterventionStatus.QUEUED:
            raise InvalidTransition(intervention.id, intervention.status.value, "delivered")
        if not self.planner.limiter.available(self.clock()):
            return intervention

        started = time.perf_counter()
        request = GenerationRequest.for_intervention(intervention)
        result, step = await self._generate(request)

        if self._stop_requested or self.degraded:
            logger.info(f"Monitoring stopped; not delivering {intervention.id}")
            return intervention
        if intervention.status != InterventionStatus.QUEUED:
            return intervention
        if not self.planner.limiter.try_acquire(self.clock()):
            return intervention

        problem = intervention.problem
        trace = ReasoningTrace(
            session_id=self.session_id,
            snapshot_version=(
                snapshot_version if snapshot_version is not None else problem.source_snapshot_version
            ),
            steps=[step],
            final_decision=(
                f"deliver {intervention.kind.value} for {problem.type.value} "
                f"({problem.severity.value}): {problem.description}"
            ),
            confidence=result.confidence,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        intervention.deliver(
            payload=result.payload,
            confidence=result.confidence,
            fallback_used=step.fallback_used,
            trace_id=trace.id,
            now=self.clock(),
        )
        await self._record_trace(trace)
        await self._save_intervention(intervention)
        logger.info(
            f"Delivered {intervention.kind.value} {intervention.id} "
            f"({'fallback' if step.fallback_used else step.generator})"
        )

        if self.delivery_sink is not None:
            try:
                outcome = self.delivery_sink(intervention.model_copy(deep=True))
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Delivery sink failed for intervention {intervention.id}")
        return intervention

    async def _generate(self, request: GenerationRequest) -> tuple[GenerationResult, GenerationStep]:
        generator = self.generators.get(request.kind)
        error: Optional[str] = None

        if generator is not None:
            try:
                result = await asyncio.wait_for(
                    generator.generate(request),
                    timeout=self.settings.generator_timeout_seconds,
                )
                return result, GenerationStep(
                    intervention_id=request.intervention_id,
                    generator=result.generator,
                    confidence=result.confidence,
                )
            except asyncio.TimeoutError:
                error = f"{generator.name} timed out after {self.settings.generator_timeout_seconds}s"
                logger.warning(error)
            except GenerationError as e:
                error = str(e)
                logger.warning(f"Falling back to templates: {e}")
            except Exception as e:
                error = f"{generator.name} failed: {e!r}"
                logger.exception(f"Generator {generator.name} failed; falling back to templates")

        result = await self.fallback.generate(request)
        return result, GenerationStep(
            intervention_id=request.intervention_id,
            generator=result.generator,
            fallback_used=True,
            confidence=result.confidence,
            error=error,
        )

    # =========================================================================
    # Feedback and expiry
    # =========================================================================

    async def record_response(self, intervention_id: str, response: UserResponse) -> Intervention:
        """Record the user's reaction to a delivered intervention.

        Dismissals lengthen the signature's cool-down. An accepted lesson
        for a knowledge gap feeds explanation-request evidence to the graph.

        Raises:
            NotFoundError: Unknown intervention.
            InvalidTransition: Not awaiting a response.
        """
        intervention = self.planner.get(intervention_id)
        cooldown_until = self.planner.record_response(intervention, response)

        problem = intervention.problem
        if response == UserResponse.ACCEPTED and problem.type == ProblemType.KNOWLEDGE_GAP:
            for concept_id in problem.concepts:
                await self.knowledge.update_mastery(concept_id, MasteryEvidence(
                    id=f"{intervention.id}:{concept_id}",
                    type=EvidenceType.EXPLANATION_REQUEST,
                    strength=ACCEPTED_LESSON_STRENGTH,
                    context=f"accepted {intervention.kind.value} {intervention.id}",
                ))

        trace = ReasoningTrace(
            session_id=self.session_id,
            snapshot_version=self.context.version,
            steps=[FeedbackStep(
                intervention_id=intervention.id,
                response=response,
                cooldown_until=cooldown_until,
            )],
            final_decision=f"{response.value}; {intervention.signature} cools down until {cooldown_until.isoformat()}",
            confidence=1.0,
        )
        await self._record_trace(trace)
        await self._save_intervention(intervention)
        self._wake.set()
        return intervention

    async def _expire_stale(self) -> None:
        for intervention in self.planner.expire_stale():
            logger.info(f"Intervention {intervention.id} expired without a response")
            await self._save_intervention(intervention)

    def _discard_pending(self, reason: str) -> None:
        for intervention in self.planner.discard_pending():
            logger.info(f"Discarded intervention {intervention.id}: {reason}")
            if self.intervention_repository is not None:
                task = asyncio.ensure_future(self._save_intervention(intervention))
                task.add_done_callback(self._log_task_failure)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background save failed: {task.exception()}")

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _record_trace(self, trace: ReasoningTrace) -> None:
        self._traces[trace.id] = trace
        if self.trace_repository is None:
            return
        try:
            await self.trace_repository.save(trace)
        except FatalStorageError as e:
            self.enter_degraded(e)

    async def _save_intervention(self, intervention: Intervention) -> None:
        if self.intervention_repository is None:
            return
        try:
            await self.intervention_repository.save(intervention.model_copy(deep=True))
        except FatalStorageError as e:
            self.enter_degraded(e)

    def enter_degraded(self, error: FatalStorageError) -> None:
        """Pause the loop; reads keep working from memory."""
        if not self.degraded:
            logger.error(f"Thought loop for session {self.session_id} degraded: {error}")
        self.degraded = True
        self._stop_requested = True
        self._resume.clear()
        if self.on_degraded is not None:
            self.on_degraded(error)

    async def load(self) -> int:
        """Reinstall this session's persisted interventions and traces."""
        count = 0
        if self.intervention_repository is not None:
            stored = await self.intervention_repository.query(lambda i: i.session_id == self.session_id)
            self.planner.load(stored)
            count += len(stored)
        if self.trace_repository is not None:
            traces = await self.trace_repository.query(lambda t: t.session_id == self.session_id)
            self._traces.update((t.id, t) for t in traces)
        return count

    # =========================================================================
    # Queries
    # =========================================================================

    def problems(self) -> list[Problem]:
        """Problems behind every open intervention, highest priority first."""
        return [p.model_copy(deep=True) for p in self.planner.problems()]

    def interventions(self, status: Optional[InterventionStatus] = None) -> list[Intervention]:
        return [
            i.model_copy(deep=True)
            for i in self.planner.interventions()
            if status is None or i.status == status
        ]

    def get_intervention(self, intervention_id: str) -> Intervention:
        return self.planner.get(intervention_id).model_copy(deep=True)

    def traces(self) -> list[ReasoningTrace]:
        return sorted(self._traces.values(), key=lambda t: t.created_at)

    def get_trace(self, trace_id: str) -> ReasoningTrace:
        trace = self._traces.get(trace_id)
        if trace is None:
            raise NotFoundError("trace", trace_id)
        return trace

    def explain(self, intervention_id: str) -> Explanation:
        """Why an intervention exists: its problem, its trace, a summary."""
        intervention = self.planner.get(intervention_id)
        problem = intervention.problem
        trace = self._traces.get(intervention.trace_id) if intervention.trace_id else None

        summary = (
            f"Detected {problem.type.value} ({problem.severity.value}) by "
            f"{problem.detector or 'a detector'} in snapshot v{problem.source_snapshot_version}: "
            f"{problem.description}."
        )
        if trace is not None:
            generation = next((s for s in trace.steps if isinstance(s, GenerationStep)), None)
            if generation is not None:
                source = "template fallback" if generation.fallback_used else generation.generator
                summary += f" Content from {source} (confidence {generation.confidence:.2f})."
        else:
            summary += f" Not delivered yet ({intervention.status.value})."

        return Explanation(
            intervention=intervention.model_copy(deep=True),
            problem=problem.model_copy(deep=True),
            trace=trace,
            summary=summary,
        )

    def status(self) -> dict[str, Any]:
        """Small status summary for the API and CLI."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "running": self.running,
            "degraded": self.degraded,
            "cycles": self.cycles,
            "last_version": self._last_version,
            "pending": len(self.planner.pending()),
        }
