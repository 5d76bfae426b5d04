"""Plain-text renderings of questions, catalog slices, and step history for prompts."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Sequence

from exambench.catalog import TopologyCatalog
from exambench.scoring.answers import option_label
from exambench.types import ImageSummary, NumericAnswer, Question, StepResult, TopologyPrediction

ANSWER_FORMAT_INSTRUCTION = (
    "Return JSON with keys `answer`, `explanation`, and `confidence` (0-1). "
    'For multiple answers, join option letters using commas - e.g., "A,C".'
)


def question_context(question: Question) -> str:
    lines = [f"Question ({question.type.value}): {question.prompt}"]
    if question.instructions:
        lines.append(f"Instructions: {question.instructions}")

    if question.options:
        lines.append("")
        lines.append("Options:")
        for index, option in enumerate(sorted(question.options, key=lambda o: o.order)):
            lines.append(f"{option_label(index)}. {option.text}")

    key = question.answer
    if isinstance(key, NumericAnswer) and key.range.min is not None and key.range.max is not None:
        precision = key.range.precision if key.range.precision is not None else "unspecified"
        lines.append("")
        lines.append(f"Numeric tolerance: [{key.range.min}, {key.range.max}] (precision {precision}).")
    return "\n".join(lines)


def image_context(summaries: Sequence[ImageSummary]) -> str:
    usable = [s for s in summaries if s.status == "ok" and s.text.strip()]
    if not usable:
        return ""
    lines = ["Image context (extracted from the question's images):"]
    for index, summary in enumerate(usable, start=1):
        lines.append(f"[Image {index}] {summary.text.strip()}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Catalog slices
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogSlice:
    """Rendered catalog listing and whether it was narrowed to the predicted parent."""

    text: str
    scoped: bool


def subject_catalog(catalog: TopologyCatalog) -> CatalogSlice:
    lines = [f"- {s.id} :: {s.name}" for s in catalog]
    return CatalogSlice("\n".join(lines) or "No subjects available.", scoped=False)


def topic_catalog(catalog: TopologyCatalog, subject_id: Optional[str]) -> CatalogSlice:
    subject = catalog.find_subject(subject_id)
    if subject is not None:
        lines = [f"Subject: {subject.id} ({subject.name})"]
        lines += [f"- {t.id} :: {t.name}" for t in subject.topics] or ["No topics available for this subject."]
        return CatalogSlice("\n".join(lines), scoped=True)

    reason = (
        f"The predicted subject '{subject_id}' was not recognised in the catalog."
        if subject_id
        else "No subject was predicted."
    )
    lines = [
        f"{reason} All topics are listed below with their parent subject. "
        "Pick the closest topic as your best guess and use a low confidence (e.g., 0.2).",
    ]
    lines += [f"- {t.id} :: {t.name} (subject: {s.id} :: {s.name})" for s, t in catalog.all_topics()]
    return CatalogSlice("\n".join(lines), scoped=False)


def subtopic_catalog(
    catalog: TopologyCatalog,
    subject_id: Optional[str],
    topic_id: Optional[str],
) -> CatalogSlice:
    subject = catalog.find_subject(subject_id)
    topic = catalog.find_topic(subject_id, topic_id)
    if subject is not None and topic is not None:
        lines = [f"Subject: {subject.id} ({subject.name})", f"Topic: {topic.id} ({topic.name})"]
        lines += [f"- {st.id} :: {st.name}" for st in topic.subtopics] or [
            "No subtopics available; pick the closest classification and note low confidence."
        ]
        return CatalogSlice("\n".join(lines), scoped=True)

    if subject is None:
        reason = (
            f"The predicted subject '{subject_id}' was not recognised in the catalog."
            if subject_id
            else "No subject was predicted."
        )
    else:
        reason = (
            f"The predicted topic '{topic_id}' was not recognised under subject '{subject.id}'."
            if topic_id
            else "No topic was predicted."
        )
    lines = [
        f"{reason} All subtopics are listed below with their parent topic and subject. "
        "Pick the closest subtopic as your best guess and use a low confidence (e.g., 0.2).",
    ]
    lines += [
        f"- {st.id} :: {st.name} (topic: {t.id} :: {t.name}; subject: {s.id} :: {s.name})"
        for s, t, st in catalog.all_subtopics()
    ]
    return CatalogSlice("\n".join(lines), scoped=False)


# ---------------------------------------------------------------------------
# Cascade state and step history
# ---------------------------------------------------------------------------

def topology_prediction_json(prediction: TopologyPrediction) -> str:
    return json.dumps(
        {
            "subjectId": prediction.subject_id,
            "subjectConfidence": prediction.subject_confidence,
            "topicId": prediction.topic_id,
            "topicConfidence": prediction.topic_confidence,
            "subtopicId": prediction.subtopic_id,
            "subtopicConfidence": prediction.subtopic_confidence,
        },
        indent=2,
    )


def previous_step_outputs(steps: Sequence[StepResult]) -> str:
    """JSON projection of every completed step, in execution order."""
    projection = []
    for step in steps:
        prediction = None
        if step.topology_stage is not None:
            prediction = step.topology_stage.model_dump(mode="json", exclude={"raw"})
        elif step.model_response is not None:
            prediction = step.model_response.model_dump(mode="json", exclude={"raw"})
        projection.append(
            {
                "id": step.id,
                "label": step.label,
                "responseText": step.response_text,
                "evaluation": step.evaluation.model_dump(mode="json") if step.evaluation else None,
                "prediction": prediction,
            }
        )
    return json.dumps(projection, indent=2, ensure_ascii=False)
