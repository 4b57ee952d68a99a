"""Context analysis - the read-only first stage of a thought cycle.

The analyzer reads a snapshot plus knowledge graph queries and produces an
Analysis. It never mutates either. Steps run under one deadline; when the
deadline passes, the steps finished so far are returned with
``incomplete=True``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from attune.context.models import ComponentInfo, ContextSnapshot, ContextState
from attune.core.config import Settings
from attune.knowledge.engine import KnowledgeGraphEngine

from .models import Analysis

logger = logging.getLogger(__name__)

AnalysisStepFn = Callable[[ContextState, Analysis], Awaitable[None]]


def find_dependency_cycles(components: dict[str, ComponentInfo]) -> list[list[str]]:
    """Strongly connected groups of components that depend on each other.

    Uses Tarjan's algorithm; only dependencies on known components count.
    Each cycle is returned sorted, and cycles are ordered by first member.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    counter = 0

    def connect(name: str) -> None:
        nonlocal counter
        index_of[name] = lowlink[name] = counter
        counter += 1
        stack.append(name)
        on_stack.add(name)

        for dependency in components[name].dependencies:
            if dependency not in components:
                continue
            if dependency not in index_of:
                connect(dependency)
                lowlink[name] = min(lowlink[name], lowlink[dependency])
            elif dependency in on_stack:
                lowlink[name] = min(lowlink[name], index_of[dependency])

        if lowlink[name] == index_of[name]:
            group = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                group.append(member)
                if member == name:
                    break
            if len(group) > 1 or name in components[name].dependencies:
                cycles.append(sorted(group))

    for name in sorted(components):
        if name not in index_of:
            connect(name)

    return sorted(cycles)


class ContextAnalyzer:
    """Builds an Analysis from a snapshot and the knowledge graph."""

    def __init__(
        self,
        knowledge: KnowledgeGraphEngine,
        settings: Optional[Settings] = None,
        extra_steps: Optional[list[tuple[str, AnalysisStepFn]]] = None,
    ):
        """Initialize the analyzer.

        Args:
            knowledge: Graph queried for gaps and confusion.
            settings: Tunable constants (timeout, coupling threshold).
            extra_steps: Additional named async steps run after the built-in ones.
        """
        self.knowledge = knowledge
        self.settings = settings or Settings()
        self.steps: list[tuple[str, AnalysisStepFn]] = [
            ("errors", self._collect_errors),
            ("architecture", self._collect_architecture),
            ("security", self._collect_security),
            ("performance", self._collect_performance),
            ("knowledge", self._collect_knowledge),
        ]
        self.steps.extend(extra_steps or [])

    async def analyze(
        self,
        snapshot: ContextSnapshot | ContextState,
        timeout: Optional[float] = None,
    ) -> Analysis:
        """Run every step under one deadline.

        Returns:
            A complete Analysis, or a partial one flagged ``incomplete``.
        """
        state = snapshot.state if isinstance(snapshot, ContextSnapshot) else snapshot
        timeout = self.settings.analysis_timeout_seconds if timeout is None else timeout
        analysis = Analysis(session_id=state.session_id, snapshot_version=state.version)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        for name, step in self.steps:
            remaining = deadline - loop.time()
            if remaining <= 0:
                analysis.incomplete = True
                break
            try:
                await asyncio.wait_for(step(state, analysis), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Analysis of {state.session_id} v{state.version} timed out in '{name}'"
                )
                analysis.incomplete = True
                break
            analysis.completed_steps.append(name)

        return analysis

    # =========================================================================
    # Built-in steps
    # =========================================================================

    async def _collect_errors(self, state: ContextState, analysis: Analysis) -> None:
        analysis.errors = [error.model_copy() for error in state.project_state.errors]

    async def _collect_architecture(self, state: ContextState, analysis: Analysis) -> None:
        components = state.project_state.architecture
        analysis.architecture = {name: info.model_copy() for name, info in components.items()}
        analysis.dependency_cycles = find_dependency_cycles(components)
        limit = self.settings.max_dependencies_per_component
        analysis.coupled_components = {
            name: len(info.dependencies)
            for name, info in sorted(components.items())
            if len(info.dependencies) > limit
        }

    async def _collect_security(self, state: ContextState, analysis: Analysis) -> None:
        analysis.security_findings = [f.model_copy() for f in state.project_state.security_findings]

    async def _collect_performance(self, state: ContextState, analysis: Analysis) -> None:
        analysis.slow_components = {
            name: sample.model_copy()
            for name, sample in sorted(state.project_state.metrics.items())
            if sample.value > sample.budget
        }

    async def _collect_knowledge(self, state: ContextState, analysis: Analysis) -> None:
        goal_concepts = state.goal_concepts()
        error_concepts = [c for error in state.project_state.errors for c in error.concepts]
        required = list(dict.fromkeys(goal_concepts + error_concepts))

        analysis.knowledge_gaps = self.knowledge.identify_gaps(required)
        for goal in state.learning_goals:
            for gap in self.knowledge.identify_gaps(goal.concepts):
                analysis.gap_goals.setdefault(gap, []).append(goal.title)
        analysis.confused_concepts = self.knowledge.confused_concepts()

        involved = list(dict.fromkeys(analysis.knowledge_gaps + analysis.confused_concepts + required))
        analysis.masteries = self.knowledge.mastery_summary(involved)
