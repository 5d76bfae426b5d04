"""Grading of the subject -> topic -> subtopic cascade against expected labels."""

from __future__ import annotations

from typing import Optional

from exambench.catalog import TopologyCatalog
from exambench.types import (
    TOPOLOGY_STAGES,
    Evaluation,
    EvaluationMetrics,
    QuestionMetadata,
    TopologyPrediction,
)

NO_LABELS_NOTE = "Question has no topology metadata to compare."


def _path(subject_id: Optional[str], topic_id: Optional[str], subtopic_id: Optional[str]) -> str:
    return " › ".join(part or "—" for part in (subject_id, topic_id, subtopic_id))


def has_expected_labels(metadata: QuestionMetadata) -> bool:
    return any(getattr(metadata, f"{stage}_id") for stage in TOPOLOGY_STAGES)


def evaluate_topology(
    metadata: QuestionMetadata,
    prediction: TopologyPrediction,
    catalog: Optional[TopologyCatalog] = None,
) -> Evaluation:
    """Compare each level that has an expected label; unlabelled levels are skipped.

    A level matches when the predicted id equals the expected id and, if a
    catalog is given, the predicted id exists in it.
    """
    metrics: dict[str, object] = {}
    notes: list[str] = []
    compared = 0
    matched = 0

    for stage in TOPOLOGY_STAGES:
        expected = getattr(metadata, f"{stage}_id")
        predicted = getattr(prediction, f"{stage}_id")
        metrics[f"{stage}_confidence"] = getattr(prediction, f"{stage}_confidence")
        metrics[f"{stage}_expected"] = bool(expected)
        metrics[f"{stage}_provided"] = bool(predicted)

        known = predicted is not None and (catalog is None or catalog.contains(stage, predicted))
        if predicted and not known:
            notes.append(f"{stage.capitalize()} '{predicted}' not found in taxonomy.")

        if not expected:
            continue
        compared += 1
        is_match = known and predicted == expected
        metrics[f"{stage}_match"] = is_match
        if is_match:
            matched += 1
        elif not predicted:
            notes.append(f"{stage.capitalize()} missing (expected '{expected}').")
        else:
            notes.append(f"{stage.capitalize()} mismatch (expected '{expected}', received '{predicted}').")

    if compared == 0:
        notes.insert(0, NO_LABELS_NOTE)

    passed = compared > 0 and matched == compared
    return Evaluation(
        expected=_path(metadata.subject_id, metadata.topic_id, metadata.subtopic_id),
        received=_path(prediction.subject_id, prediction.topic_id, prediction.subtopic_id),
        passed=passed,
        score=matched / compared if compared else 0.0,
        notes=None if passed else " ".join(notes) or None,
        metrics=EvaluationMetrics(**metrics),
    )
