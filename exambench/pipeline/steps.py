"""Default benchmark steps and normalisation of configured step lists."""

from __future__ import annotations

from typing import Optional, Sequence

from exambench.types import StepConfig, TopologyStage

SUBJECT_STEP_ID = "topology-subject"
TOPIC_STEP_ID = "topology-topic"
SUBTOPIC_STEP_ID = "topology-subtopic"
ANSWER_STEP_ID = "answer"
LEGACY_TOPOLOGY_STEP_ID = "topology"

STAGE_BY_STEP_ID: dict[str, TopologyStage] = {
    SUBJECT_STEP_ID: "subject",
    TOPIC_STEP_ID: "topic",
    SUBTOPIC_STEP_ID: "subtopic",
}

DEFAULT_SYSTEM_PROMPT = """You are an evaluation assistant for competitive exam benchmarks.
You must always return valid JSON that adheres to the schema requested in the user message.

Guidelines:
- Read the user question and available options (if any) carefully.
- Think step-by-step, then provide a concise final explanation.
- If you cannot determine the answer, respond with "answer": "UNKNOWN" and explain why.
- Do not output any text before or after the JSON object.
- When requested to respond without JSON mode, still keep the JSON object as plain text."""

SUBJECT_TEMPLATE = """Identify the best SUBJECT for the question using the catalog below.

SUBJECT CATALOG:
{{subjectCatalog}}

Rules:
1. Copy the subjectId exactly as shown (no new IDs, no "null").
2. Always provide your best guess and set `confidence` between 0 and 1.
3. Use low confidence (e.g., 0.2) if unsure, but still return a subjectId.

Return JSON:
{
  "subjectId": "<subject id from the catalog>",
  "confidence": 0.6
}

--- QUESTION ---

{{questionContext}}

{{imageContext}}"""

TOPIC_TEMPLATE = """Choose the best TOPIC for the question from the catalog below.

TOPIC CATALOG:
{{topicCatalog}}

Rules:
1. Return the exact topicId shown (no new IDs, no "null").
2. If unsure or if the subject seems wrong, pick the closest topic and lower the confidence.
3. Confidence must be between 0 and 1.

Return JSON:
{
  "topicId": "<topic id from the catalog>",
  "confidence": 0.5
}

--- QUESTION ---

{{questionContext}}

{{imageContext}}"""

SUBTOPIC_TEMPLATE = """Choose the best SUBTOPIC for the question from the catalog below.

SUBTOPIC CATALOG:
{{subtopicCatalog}}

Rules:
1. Return the exact subtopicId; never respond with "null" or invent an id.
2. Provide your best guess even if uncertain and reflect that in the confidence score.
3. Confidence must be between 0 and 1.

Return JSON:
{
  "subtopicId": "<subtopic id from the catalog>",
  "confidence": 0.4
}

--- QUESTION ---

{{questionContext}}

{{imageContext}}"""

ANSWER_TEMPLATE = """{{questionContext}}

{{imageContext}}

Topology classification:
{{topologyPrediction}}

Using your reasoning, provide the final answer. Respect the answer format requested in the prompt.
Return JSON with keys `answer`, `explanation`, and `confidence` (0-1). For multiple answers, join option letters using commas - e.g., "A,C"."""


def _cascade_steps() -> list[StepConfig]:
    return [
        StepConfig(
            id=SUBJECT_STEP_ID,
            label="Topology: subject",
            description="Classify the question into a catalog subject.",
            prompt_template=SUBJECT_TEMPLATE,
        ),
        StepConfig(
            id=TOPIC_STEP_ID,
            label="Topology: topic",
            description="Refine the classification to a topic within the predicted subject.",
            prompt_template=TOPIC_TEMPLATE,
        ),
        StepConfig(
            id=SUBTOPIC_STEP_ID,
            label="Topology: subtopic",
            description="Refine the classification to a subtopic within the predicted topic.",
            prompt_template=SUBTOPIC_TEMPLATE,
        ),
    ]


def default_steps() -> list[StepConfig]:
    return _cascade_steps() + [
        StepConfig(
            id=ANSWER_STEP_ID,
            label="Final answer",
            description="Produce the final answer in the required format.",
            prompt_template=ANSWER_TEMPLATE,
        )
    ]


DEFAULT_TEMPLATES: dict[str, str] = {step.id: step.prompt_template for step in default_steps()}


def normalize_steps(steps: Optional[Sequence[StepConfig]]) -> list[StepConfig]:
    """Enabled steps in execution order.

    A legacy single ``topology`` step becomes the three-stage cascade, placed
    immediately before the answer step (or first when there is none). Steps
    with an empty template fall back to the default template for their id.
    """
    if steps is None:
        return default_steps()

    enabled = [s for s in steps if s.enabled]
    has_legacy = any(s.id == LEGACY_TOPOLOGY_STEP_ID for s in enabled)
    normalized = [s for s in enabled if s.id != LEGACY_TOPOLOGY_STEP_ID]

    if has_legacy and not any(s.id in STAGE_BY_STEP_ID for s in normalized):
        answer_index = next(
            (i for i, s in enumerate(normalized) if s.id == ANSWER_STEP_ID),
            None,
        )
        insert_at = answer_index if answer_index is not None else 0
        normalized[insert_at:insert_at] = _cascade_steps()

    return [
        s if s.prompt_template.strip() or s.id not in DEFAULT_TEMPLATES
        else s.model_copy(update={"prompt_template": DEFAULT_TEMPLATES[s.id]})
        for s in normalized
    ]
