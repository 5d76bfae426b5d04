"""Tests for run metric aggregation."""

from exambench.reporting.aggregate import aggregate_metrics
from exambench.types import (
    Attempt,
    Evaluation,
    EvaluationMetrics,
    QuestionSnapshot,
    QuestionType,
    SingleAnswer,
)

SNAPSHOT = QuestionSnapshot(prompt="?", type=QuestionType.MCQ, difficulty="EASY", answer=SingleAnswer(correct_option=0))


def _topology(passed: bool, **levels) -> Evaluation:
    return Evaluation(passed=passed, score=1.0 if passed else 0.0, metrics=EvaluationMetrics(**levels))


def _attempt(qid: str, passed: bool, latency: float, topology: Evaluation | None = None) -> Attempt:
    return Attempt(
        id=f"a-{qid}",
        question_id=qid,
        latency_ms=latency,
        prompt_tokens=100,
        completion_tokens=20,
        evaluation=Evaluation(passed=passed, score=1.0 if passed else 0.0),
        topology_evaluation=topology,
        question_snapshot=SNAPSHOT,
    )


ATTEMPTS = [
    _attempt(
        "q1", True, 100.0,
        _topology(True, subject_expected=True, subject_match=True, topic_expected=True, topic_match=True,
                  subtopic_expected=True, subtopic_match=True),
    ),
    _attempt(
        "q2", False, 300.0,
        _topology(False, subject_expected=True, subject_match=True, topic_expected=True, topic_match=False,
                  subtopic_expected=False),
    ),
    # no labels at all: excluded from topology accuracy
    _attempt("q3", True, 200.0, _topology(False, subject_expected=False, topic_expected=False, subtopic_expected=False)),
    _attempt("q4", False, 400.0),
]


def test_answer_accuracy_and_latency():
    metrics = aggregate_metrics(ATTEMPTS)
    assert metrics.accuracy == 0.5
    assert metrics.passed_count == 2
    assert metrics.failed_count == 2
    assert metrics.average_latency_ms == 250.0
    assert metrics.total_latency_ms == 1000.0
    assert metrics.total_prompt_tokens == 400
    assert metrics.total_completion_tokens == 80


def test_topology_accuracy_only_counts_labelled_attempts():
    metrics = aggregate_metrics(ATTEMPTS)
    assert metrics.topology_passed_count == 1
    assert metrics.topology_failed_count == 1
    assert metrics.topology_accuracy == 0.5


def test_level_accuracy_skips_attempts_without_that_label():
    metrics = aggregate_metrics(ATTEMPTS)
    assert metrics.topology_subject_accuracy == 1.0
    assert metrics.topology_topic_accuracy == 0.5
    # q2 has no expected subtopic and must not count against it
    assert metrics.topology_subtopic_accuracy == 1.0
    assert metrics.topology_subtopic_passed_count == 1
    assert metrics.topology_subtopic_failed_count == 0


def test_aggregation_is_idempotent():
    assert aggregate_metrics(ATTEMPTS) == aggregate_metrics(ATTEMPTS)
    assert aggregate_metrics(list(ATTEMPTS)).model_dump() == aggregate_metrics(ATTEMPTS).model_dump()


def test_empty_run():
    metrics = aggregate_metrics([])
    assert metrics.accuracy == 0.0
    assert metrics.topology_accuracy == 0.0
    assert metrics.latency_p95_ms == 0.0
