"""Fail-fast compatibility check run against a profile before committing to a full benchmark.

Steps, in order:
  1. connectivity  - list models
  2. json_mode     - one trivial JSON completion, recording the negotiated format
  3. protocol      - the full cascade + answer pipeline on a canary question
  4. vision        - only when an image-to-text binding is enabled; can flip the verdict

A failure in steps 1-3 stops the check and marks the remaining steps skipped.
"""

from __future__ import annotations

from typing import Optional

from exambench.adapters.base import BaseChatAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.catalog import TopologyCatalog
from exambench.logging import get_logger
from exambench.pipeline.orchestrator import PipelineOrchestrator
from exambench.pipeline.steps import default_steps
from exambench.profiles import resolve_binding
from exambench.runners.runner import resolve_adapter
from exambench.types import (
    CompatibilityCheckResult,
    CompatibilityCheckStep,
    JsonFormat,
    ModelBinding,
    Profile,
    Question,
    QuestionOption,
    QuestionType,
    SingleAnswer,
    Subject,
    Subtopic,
    Topic,
    utcnow,
)

logger = get_logger(__name__)

CANARY_QUESTION = Question(
    id="compat-test",
    type=QuestionType.MCQ,
    prompt="What is 2 + 2?",
    options=[
        QuestionOption(id=0, order=0, text="3"),
        QuestionOption(id=1, order=1, text="4"),
        QuestionOption(id=2, order=2, text="5"),
        QuestionOption(id=3, order=3, text="6"),
    ],
    answer=SingleAnswer(correct_option=1),
)

# Used when the caller has no catalog of its own
CANARY_CATALOG = TopologyCatalog(
    [
        Subject(
            id="math",
            name="Mathematics",
            topics=[
                Topic(
                    id="arithmetic",
                    name="Arithmetic",
                    subtopics=[Subtopic(id="addition", name="Addition")],
                )
            ],
        )
    ]
)

# 1x1 PNG
TEST_IMAGE_DATA_URL = (
    "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8DwHwAF"
    "BQIAX8jx0gAAAABJRU5ErkJggg=="
)
VISION_PROMPT = "Describe what you see in this image."

JSON_TEST_MESSAGES = [
    {"role": "system", "content": "You are a test assistant. Return only the requested JSON, no additional text."},
    {"role": "user", "content": 'Return the JSON object {"answer": "4"} with no additional text.'},
]


def _new_steps(include_vision: bool) -> list[CompatibilityCheckStep]:
    steps = [
        CompatibilityCheckStep(id="connectivity", name="Server Connectivity"),
        CompatibilityCheckStep(id="json_mode", name="JSON Mode Support"),
        CompatibilityCheckStep(id="protocol", name="Protocol Compliance"),
    ]
    if include_vision:
        steps.append(CompatibilityCheckStep(id="vision", name="Vision Model Test"))
    return steps


def _fail(step: CompatibilityCheckStep, message: str) -> None:
    step.status = "fail"
    step.error = message
    step.log(f"Failed: {message}", "error")


def _skip_remaining(steps: list[CompatibilityCheckStep]) -> None:
    for step in steps:
        if step.status == "pending":
            step.status = "skipped"
            step.log("Skipped because an earlier check failed.", "warn")


def _binding_meta(binding: ModelBinding) -> dict[str, object]:
    return {
        "id": binding.id,
        "model_id": binding.model_id,
        "base_url": binding.base_url,
        "capability": binding.capability,
    }


async def _check_vision(
    step: CompatibilityCheckStep,
    adapter: BaseChatAdapter,
    binding: ModelBinding,
) -> bool:
    step.log(f"Vision binding: {binding.model_id} at {binding.base_url}")
    step.log("Sending a 1x1 PNG for the vision smoke test")
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": VISION_PROMPT},
                {"type": "image_url", "image_url": {"url": TEST_IMAGE_DATA_URL}},
            ],
        }
    ]
    try:
        completion = await adapter.complete(
            messages,
            prefer_json=False,
            temperature=0.0,
            max_tokens=binding.max_output_tokens,
        )
    except Exception as exc:
        _fail(step, str(exc) or exc.__class__.__name__)
        return False

    extracted = completion.text.strip()
    step.log(f'Extracted text: "{extracted[:200]}"')
    if not extracted:
        _fail(step, "Vision model did not extract any text")
        return False
    step.status = "pass"
    step.log("Vision model returned text for the test image")
    return True


async def run_compatibility_check(
    profile: Profile,
    *,
    catalog: Optional[TopologyCatalog] = None,
    adapter: Optional[BaseChatAdapter] = None,
    vision_adapter: Optional[BaseChatAdapter] = None,
    adapter_name: str = "openai_compat",
) -> CompatibilityCheckResult:
    result = CompatibilityCheckResult(started_at=utcnow())
    text = resolve_binding(profile, "text-to-text")
    vision = resolve_binding(profile, "image-to-text")
    result.steps = _new_steps(include_vision=vision is not None)
    result.metadata["profile_id"] = profile.id
    result.metadata["profile_name"] = profile.name

    def finish(compatible: bool, summary: str) -> CompatibilityCheckResult:
        _skip_remaining(result.steps)
        result.compatible = compatible
        result.summary = summary
        result.metadata["supports_json_mode"] = result.json_format in ("json_object", "json_schema")
        result.completed_at = utcnow()
        logger.info(f"Compatibility check for {profile.id}: {summary}")
        return result

    if text is None:
        _fail(result.steps[0], "Profile has no text-to-text binding configured")
        return finish(False, "Profile has no text-to-text binding configured")

    result.metadata["binding"] = _binding_meta(text)
    adapter = adapter or resolve_adapter(adapter_name, text)
    connectivity, json_step, protocol = result.steps[:3]

    # 1. connectivity
    connectivity.log(f"Testing server connectivity at {text.base_url}...")
    try:
        models = await adapter.list_models()
    except Exception as exc:
        _fail(connectivity, str(exc) or exc.__class__.__name__)
        return finish(False, f"Server not reachable at {text.base_url}")
    model_ids = ", ".join(str(m.get("id")) for m in models) or "no models reported"
    connectivity.log(f"Available models: {model_ids}")
    connectivity.status = "pass"

    # 2. JSON mode
    json_step.log("Testing JSON mode support...")
    try:
        completion = await adapter.complete(
            JSON_TEST_MESSAGES,
            prefer_json=True,
            schema_hint=SchemaHint.ANSWER,
            temperature=0.0,
            max_tokens=text.max_output_tokens,
        )
    except Exception as exc:
        _fail(json_step, str(exc) or exc.__class__.__name__)
        return finish(False, "JSON mode test failed")
    json_format: JsonFormat = completion.json_format if completion.json_format in ("json_object", "json_schema") else "none"
    if json_format == "none":
        _fail(json_step, "JSON mode required but not available")
        return finish(False, "Model does not support JSON mode (required for benchmarking)")
    result.json_format = json_format
    json_step.log(f"JSON mode supported: {json_format}")
    json_step.status = "pass"

    # 3. protocol compliance on the canary question
    protocol.log("Testing protocol compliance with topology and answer steps...")
    orchestrator = PipelineOrchestrator(adapter, text, catalog or CANARY_CATALOG, default_steps(), profile=profile)
    attempt = await orchestrator.run_question(CANARY_QUESTION)
    for step in attempt.steps:
        protocol.log(f"{step.id}: response received in {step.latency_ms:.0f}ms ({step.json_format or 'text'})")
        for note in step.notes:
            protocol.log(f"{step.id}: {note}", "warn")
    result.metadata["topology_response"] = (
        attempt.topology_prediction.model_dump(mode="json", exclude={"raw"}) if attempt.topology_prediction else None
    )
    result.metadata["answer_response"] = (
        attempt.model_response.model_dump(mode="json") if attempt.model_response else None
    )
    if attempt.error:
        _fail(protocol, attempt.error)
        return finish(False, "Model does not follow required response format")

    prediction = attempt.topology_prediction
    complete = prediction is not None and all(
        (prediction.subject_id, prediction.topic_id, prediction.subtopic_id)
    )
    if attempt.model_response is not None:
        protocol.log(f'Answer parsed: "{attempt.model_response.answer}"')
    if not complete:
        _fail(protocol, "Topology classification did not return all required IDs")
        return finish(False, "Topology classification missing required fields")
    protocol.log("All topology stages returned IDs")
    protocol.status = "pass"
    summary = f"Compatible - Supports {json_format} format"

    # 4. vision, only when configured
    if vision is None:
        return finish(True, summary)
    result.metadata["vision_binding"] = _binding_meta(vision)
    vision_ok = await _check_vision(
        result.steps[3],
        vision_adapter or resolve_adapter(adapter_name, vision),
        vision,
    )
    if not vision_ok:
        return finish(False, f"Vision model test failed: {result.steps[3].error}")
    return finish(True, f"{summary} with vision")
