"""Tests for Attune Pydantic models."""

import pytest
from pydantic import ValidationError as SchemaError

from attune.context.models import ContextState, GoalStatus, LearningGoal
from attune.core.config import Settings
from attune.core.errors import InvalidTransition
from attune.knowledge.models import ConceptNode, EdgeKind, EvidenceType, MasteryEvidence
from attune.thought.models import (
    FeedbackStep,
    GenerationStep,
    Intervention,
    InterventionKind,
    InterventionStatus,
    Problem,
    ProblemType,
    ReasoningTrace,
    Severity,
    UserResponse,
    problem_signature,
)


def make_problem(**kwargs) -> Problem:
    kwargs.setdefault("type", ProblemType.ARCHITECTURAL_FLAW)
    kwargs.setdefault("severity", Severity.HIGH)
    kwargs.setdefault("affected_components", {"api", "db"})
    return Problem(
        description="cycle",
        root_cause=kwargs.pop("root_cause", "dependency-cycle"),
        source_snapshot_version=1,
        **kwargs,
    )


def make_intervention(problem=None) -> Intervention:
    problem = problem or make_problem()
    return Intervention(session_id="s", problem=problem, signature=problem.signature, kind=InterventionKind.DIAGRAM)


class TestSeverity:
    """Test Severity ordering."""

    def test_rank(self):
        """Test severities rank low to critical."""
        assert [s.rank for s in Severity] == [0, 1, 2, 3]

    def test_escalate_caps_at_critical(self):
        """Test escalation stops at critical."""
        assert Severity.LOW.escalate() == Severity.MEDIUM
        assert Severity.CRITICAL.escalate() == Severity.CRITICAL


class TestEvidenceTargets:
    """Test EvidenceType targets."""

    def test_targets(self):
        """Test which evidence pulls mastery where."""
        assert EvidenceType.CORRECT_USAGE.target == 1.0
        assert EvidenceType.SUCCESSFUL_APPLICATION.target == 1.0
        assert EvidenceType.ERROR_PATTERN.target == 0.0
        assert EvidenceType.EXPLANATION_REQUEST.target is None

    def test_evidence_is_immutable(self):
        """Test evidence cannot be edited once recorded."""
        evidence = MasteryEvidence(type=EvidenceType.CORRECT_USAGE, strength=0.5)

        with pytest.raises(SchemaError):
            evidence.strength = 0.9


class TestConceptNode:
    """Test ConceptNode helpers."""

    def test_hard_prerequisites(self):
        """Test soft edges are not prerequisites."""
        node = ConceptNode(id="x", prerequisites={"a": EdgeKind.HARD, "b": EdgeKind.SOFT, "c": EdgeKind.HARD})

        assert node.hard_prerequisites() == ["a", "c"]

    def test_mastery_bounds(self):
        """Test mastery outside [0, 1] is rejected."""
        with pytest.raises(SchemaError):
            ConceptNode(id="x", mastery=1.5)


class TestContextState:
    """Test ContextState helpers."""

    def test_goal_concepts_skip_inactive_goals(self):
        """Test only active goals contribute concepts, without duplicates."""
        state = ContextState(session_id="s", user_id="u", learning_goals=[
            LearningGoal(title="a", concepts=["promises", "loops"]),
            LearningGoal(title="b", concepts=["loops", "closures"]),
            LearningGoal(title="c", concepts=["generators"], status=GoalStatus.ACHIEVED),
        ])

        assert state.goal_concepts() == ["promises", "loops", "closures"]


class TestProblemSignature:
    """Test problem signatures."""

    def test_signature_is_order_independent(self):
        """Test component order does not change the signature."""
        assert problem_signature(ProblemType.SECURITY, ["b", "a"], "rule") == problem_signature(
            ProblemType.SECURITY, {"a", "b"}, "rule"
        )

    def test_signature_depends_on_root_cause(self):
        """Test different root causes give different signatures."""
        assert make_problem(root_cause="x").signature != make_problem(root_cause="y").signature


class TestInterventionLifecycle:
    """Test Intervention transitions."""

    def test_happy_path(self, clock):
        """Test planned -> queued -> delivered -> accepted."""
        intervention = make_intervention()

        intervention.queue(clock.now)
        intervention.deliver({"nodes": []}, 0.4, True, "trace-1", clock.now)
        intervention.respond(UserResponse.ACCEPTED, clock.now)

        assert intervention.status == InterventionStatus.ACCEPTED
        assert intervention.is_terminal
        assert intervention.revision == 3
        assert intervention.trace_id == "trace-1"

    def test_cannot_deliver_planned(self, clock):
        """Test skipping the queue is rejected."""
        intervention = make_intervention()

        with pytest.raises(InvalidTransition):
            intervention.deliver({}, 0.4, True, "trace-1", clock.now)
        assert intervention.status == InterventionStatus.PLANNED

    def test_cannot_discard_delivered(self, clock):
        """Test delivered interventions are not discarded."""
        intervention = make_intervention()
        intervention.queue(clock.now)
        intervention.deliver({}, 0.4, True, "trace-1", clock.now)

        with pytest.raises(InvalidTransition):
            intervention.discard()

    def test_merge_keeps_identity_and_oldest_age(self, clock):
        """Test a re-detected problem folds into the pending one."""
        older = make_problem(severity=Severity.MEDIUM)
        intervention = make_intervention(older)

        intervention.merge_problem(make_problem(severity=Severity.CRITICAL))

        assert intervention.problem.id == older.id
        assert intervention.problem.first_seen == older.first_seen
        assert intervention.problem.severity == Severity.CRITICAL

    def test_merge_after_delivery_is_rejected(self, clock):
        """Test delivered interventions no longer change."""
        intervention = make_intervention()
        intervention.queue(clock.now)
        intervention.deliver({}, 0.4, True, "trace-1", clock.now)

        with pytest.raises(InvalidTransition):
            intervention.merge_problem(make_problem())


class TestReasoningTrace:
    """Test ReasoningTrace."""

    def test_trace_is_immutable(self):
        """Test traces cannot be edited."""
        trace = ReasoningTrace(session_id="s", snapshot_version=1, final_decision="x")

        with pytest.raises(SchemaError):
            trace.final_decision = "y"

    def test_steps_round_trip_by_kind(self):
        """Test tagged steps deserialize to their own types."""
        trace = ReasoningTrace(
            session_id="s",
            snapshot_version=1,
            final_decision="x",
            steps=[
                GenerationStep(intervention_id="i", generator="template"),
                FeedbackStep(intervention_id="i", response=UserResponse.DISMISSED),
            ],
        )

        restored = ReasoningTrace.model_validate_json(trace.model_dump_json())

        assert [type(s) for s in restored.steps] == [GenerationStep, FeedbackStep]


class TestSettings:
    """Test Settings."""

    def test_defaults(self):
        """Test tuned defaults."""
        settings = Settings(_env_file=None)

        assert settings.gap_threshold == 0.6
        assert settings.rate_limit_count == 3
        assert settings.confusion_threshold == 2

    def test_environment_override(self, monkeypatch):
        """Test ATTUNE_ variables override defaults."""
        monkeypatch.setenv("ATTUNE_RATE_LIMIT_COUNT", "5")

        assert Settings(_env_file=None).rate_limit_count == 5

    def test_log_level_int(self):
        """Test log level conversion."""
        assert Settings(_env_file=None, log_level="debug").log_level_int == 10
