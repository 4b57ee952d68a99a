"""Problem detectors.

Detectors run in a fixed order over one Analysis. Each is isolated: a
detector that raises is logged and recorded in the trace, and the others
still contribute their problems.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from attune.context.models import ErrorKind

from .models import Analysis, DetectionStep, Problem, ProblemType, Severity

logger = logging.getLogger(__name__)


class Detector(Protocol):
    """Turns an Analysis into zero or more Problems."""

    name: str

    def detect(self, analysis: Analysis) -> list[Problem]:
        ...


@dataclass
class DetectionReport:
    """Problems from every detector plus one trace step per detector."""

    problems: list[Problem] = field(default_factory=list)
    steps: list[DetectionStep] = field(default_factory=list)


class LogicalErrorDetector:
    """Errors observed in the project, grouped by signature."""

    name = "logical_error"

    BASE_SEVERITY = {
        ErrorKind.SYNTAX: Severity.LOW,
        ErrorKind.TYPE: Severity.MEDIUM,
        ErrorKind.LOGICAL: Severity.MEDIUM,
        ErrorKind.RUNTIME: Severity.HIGH,
    }
    REPEAT_ESCALATION = 3  # Occurrences before severity goes up a step

    def detect(self, analysis: Analysis) -> list[Problem]:
        problems = []
        for error in analysis.errors:
            severity = self.BASE_SEVERITY[error.kind]
            if error.occurrences >= self.REPEAT_ESCALATION:
                severity = severity.escalate()

            where = f" in {error.component}" if error.component else ""
            actions = [f"Inspect the code path{where} that produces '{error.signature}'"]
            if error.concepts:
                actions.append(f"Review: {', '.join(error.concepts)}")

            problems.append(Problem(
                type=ProblemType.LOGICAL_ERROR,
                severity=severity,
                description=error.message or f"{error.kind.value} error '{error.signature}'{where}",
                affected_components={error.component} if error.component else set(),
                suggested_actions=actions,
                root_cause=error.signature,
                source_snapshot_version=analysis.snapshot_version,
                first_seen=error.first_seen,
                concepts=list(error.concepts),
                detector=self.name,
            ))
        return problems


class ArchitecturalFlawDetector:
    """Dependency cycles and over-coupled components."""

    name = "architectural_flaw"

    def detect(self, analysis: Analysis) -> list[Problem]:
        problems = []
        for cycle in analysis.dependency_cycles:
            problems.append(Problem(
                type=ProblemType.ARCHITECTURAL_FLAW,
                severity=Severity.HIGH,
                description=f"Components depend on each other in a cycle: {' -> '.join(cycle)}",
                affected_components=set(cycle),
                suggested_actions=[
                    "Extract the shared piece into its own component",
                    "Invert one dependency behind an interface",
                ],
                root_cause="dependency-cycle",
                source_snapshot_version=analysis.snapshot_version,
                detector=self.name,
            ))

        for name, count in analysis.coupled_components.items():
            problems.append(Problem(
                type=ProblemType.ARCHITECTURAL_FLAW,
                severity=Severity.MEDIUM,
                description=f"{name} depends on {count} components",
                affected_components={name},
                suggested_actions=[f"Split {name} by responsibility"],
                root_cause="over-coupled",
                source_snapshot_version=analysis.snapshot_version,
                detector=self.name,
            ))
        return problems


class SecurityDetector:
    """Findings reported by external scanners."""

    name = "security"

    def detect(self, analysis: Analysis) -> list[Problem]:
        return [
            Problem(
                type=ProblemType.SECURITY,
                severity=Severity(finding.severity),
                description=finding.detail or f"{finding.rule} in {finding.component}",
                affected_components={finding.component},
                suggested_actions=[f"Fix {finding.rule} in {finding.component}"],
                root_cause=finding.rule,
                source_snapshot_version=analysis.snapshot_version,
                first_seen=finding.first_seen,
                detector=self.name,
            )
            for finding in analysis.security_findings
        ]


class KnowledgeGapDetector:
    """Concepts below the gap threshold, and concepts the user is confused about."""

    name = "knowledge_gap"

    def detect(self, analysis: Analysis) -> list[Problem]:
        error_concepts = {c for error in analysis.errors for c in error.concepts}
        problems = []

        for concept in analysis.knowledge_gaps:
            level = analysis.masteries.get(concept)
            mastery = level.mastery if level else 0.0
            severity = Severity.MEDIUM
            if concept in error_concepts:
                severity = Severity.HIGH
            if level is not None and level.confused:
                severity = severity.escalate()

            goals = analysis.gap_goals.get(concept, [])
            reason = f"needed for {', '.join(goals)}" if goals else "behind recent errors"
            problems.append(Problem(
                type=ProblemType.KNOWLEDGE_GAP,
                severity=severity,
                description=f"Mastery of {concept} is {mastery:.2f}; {reason}",
                affected_components={concept},
                suggested_actions=[f"Short lesson on {concept}"],
                root_cause=f"gap:{concept}",
                source_snapshot_version=analysis.snapshot_version,
                concepts=[concept],
                detector=self.name,
            ))

        gaps = set(analysis.knowledge_gaps)
        for concept in analysis.confused_concepts:
            if concept in gaps:
                continue
            problems.append(Problem(
                type=ProblemType.KNOWLEDGE_GAP,
                severity=Severity.LOW,
                description=f"Repeated errors suggest confusion about {concept}",
                affected_components={concept},
                suggested_actions=[f"Contrast correct and incorrect uses of {concept}"],
                root_cause=f"confused:{concept}",
                source_snapshot_version=analysis.snapshot_version,
                concepts=[concept],
                detector=self.name,
            ))
        return problems


class PerformanceDetector:
    """Measurements over their budget."""

    name = "performance"

    def detect(self, analysis: Analysis) -> list[Problem]:
        problems = []
        for name, sample in analysis.slow_components.items():
            ratio = sample.value / sample.budget if sample.budget > 0 else float("inf")
            if ratio >= 4:
                severity = Severity.CRITICAL
            elif ratio >= 2:
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM
            problems.append(Problem(
                type=ProblemType.PERFORMANCE,
                severity=severity,
                description=(
                    f"{name} takes {sample.value:g}{sample.unit} "
                    f"(budget {sample.budget:g}{sample.unit})"
                ),
                affected_components={name},
                suggested_actions=[f"Profile {name}"],
                root_cause="over-budget",
                source_snapshot_version=analysis.snapshot_version,
                first_seen=sample.measured_at,
                detector=self.name,
            ))
        return problems


def default_detectors() -> list[Detector]:
    """The fixed detector order."""
    return [
        LogicalErrorDetector(),
        ArchitecturalFlawDetector(),
        SecurityDetector(),
        KnowledgeGapDetector(),
        PerformanceDetector(),
    ]


def run_detectors(
    analysis: Analysis,
    detectors: Optional[list[Detector]] = None,
) -> DetectionReport:
    """Run detectors in order, isolating failures.

    Problems sharing a signature within one run are merged into the first.
    """
    report = DetectionReport()
    seen: dict[str, Problem] = {}

    for detector in detectors if detectors is not None else default_detectors():
        try:
            found = detector.detect(analysis)
        except Exception as e:
            logger.exception(f"Detector {detector.name} failed")
            report.steps.append(DetectionStep(detector=detector.name, failed=True, error=str(e)))
            continue

        signatures = []
        for problem in found:
            signature = problem.signature
            signatures.append(signature)
            existing = seen.get(signature)
            if existing is None:
                seen[signature] = problem
                report.problems.append(problem)
            elif problem.severity.rank > existing.severity.rank:
                existing.severity = problem.severity
        report.steps.append(DetectionStep(detector=detector.name, signatures=signatures))

    return report
