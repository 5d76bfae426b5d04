"""Level 1 (handshake) and Level 2 (readiness) diagnostics for a profile."""

from __future__ import annotations

import uuid
from typing import Optional, Sequence

from exambench.adapters.base import BaseChatAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.errors import ClientError
from exambench.logging import get_logger
from exambench.parsing import parse_model_response
from exambench.pipeline.prompts import ANSWER_FORMAT_INSTRUCTION, question_context
from exambench.pipeline.steps import DEFAULT_SYSTEM_PROMPT
from exambench.runners.runner import resolve_adapter, text_binding
from exambench.scoring.answers import evaluate_answer, expected_answer_text
from exambench.types import (
    CheckLog,
    DiagnosticsLevel,
    DiagnosticsResult,
    ModelBinding,
    Profile,
    Question,
    QuestionType,
    utcnow,
)

logger = get_logger(__name__)

HANDSHAKE_MESSAGES = [
    {
        "role": "system",
        "content": "You are a diagnostics assistant. Follow the instructions exactly, returning only what is requested.",
    },
    {"role": "user", "content": 'Return the JSON object {"status":"ready"} with no additional text.'},
]


def _log(logs: list[CheckLog], message: str, severity: str = "info") -> None:
    logs.append(CheckLog(message=message, severity=severity))


def select_sample_question(questions: Sequence[Question]) -> Question:
    """Prefer a single-choice question; it has the least ambiguous grading."""
    if not questions:
        raise ValueError("Readiness check needs at least one question")
    return next((q for q in questions if q.type is QuestionType.MCQ), questions[0])


async def _handshake(adapter: BaseChatAdapter, result: DiagnosticsResult) -> None:
    logs = result.logs
    _log(logs, "Starting Level 1 handshake diagnostic.")
    try:
        models = await adapter.list_models()
    except ClientError as exc:
        _log(logs, f"Failed to fetch models: {exc}", "error")
        result.summary = "Model list request failed"
        return
    _log(logs, f"Received models: {', '.join(str(m.get('id')) for m in models) or 'no models reported'}")

    _log(logs, "Attempting JSON-mode test completion.")
    try:
        completion = await adapter.complete(
            HANDSHAKE_MESSAGES,
            prefer_json=True,
            schema_hint=SchemaHint.ANSWER,
            temperature=0.0,
        )
    except ClientError as exc:
        _log(logs, f"Handshake request failed: {exc}", "error")
        result.summary = "Handshake request failed"
        return

    result.supports_json_mode = completion.json_format in ("json_object", "json_schema")
    result.metadata["json_format"] = completion.json_format
    _log(logs, f"Model response: {completion.text}")

    parsed = parse_model_response(completion.text)
    if "ready" in parsed.answer.lower():
        _log(logs, "Handshake confirmed JSON compliance.")
        result.status = "pass"
        result.summary = "Handshake succeeded"
    else:
        _log(logs, "Handshake response did not confirm readiness.", "warn")
        result.summary = "Handshake completed but response was not in expected format"


async def _readiness(
    adapter: BaseChatAdapter,
    binding: ModelBinding,
    question: Question,
    result: DiagnosticsResult,
) -> None:
    logs = result.logs
    _log(logs, f"Running Level 2 readiness check using question {question.id}.")
    prompt = f"{question_context(question)}\n\n{ANSWER_FORMAT_INSTRUCTION}"
    try:
        completion = await adapter.complete(
            [
                {"role": "system", "content": binding.default_system_prompt.strip() or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            prefer_json=True,
            schema_hint=SchemaHint.ANSWER,
            temperature=binding.temperature,
            max_tokens=binding.max_output_tokens,
        )
    except ClientError as exc:
        _log(logs, f"Readiness check failed: {exc}", "error")
        result.summary = "Readiness request failed"
        result.metadata["error"] = str(exc)
        return

    result.supports_json_mode = completion.json_format in ("json_object", "json_schema")
    evaluation = evaluate_answer(question, parse_model_response(completion.text))
    _log(logs, f"Response body: {completion.text}")
    _log(logs, f'Evaluation: received "{evaluation.received}", expected "{evaluation.expected}".')

    result.metadata.update(
        question_id=question.id,
        expected=expected_answer_text(question),
        evaluation=evaluation.model_dump(mode="json"),
    )
    if evaluation.passed:
        result.status = "pass"
        result.summary = "Readiness check passed with correct answer."
    else:
        result.summary = "Readiness check completed but answer was incorrect."


async def run_diagnostics(
    profile: Profile,
    level: DiagnosticsLevel,
    *,
    questions: Sequence[Question] = (),
    question: Optional[Question] = None,
    adapter: Optional[BaseChatAdapter] = None,
    adapter_name: str = "openai_compat",
) -> DiagnosticsResult:
    binding = text_binding(profile)
    adapter = adapter or resolve_adapter(adapter_name, binding)
    result = DiagnosticsResult(id=uuid.uuid4().hex, profile_id=profile.id, level=level)

    if level is DiagnosticsLevel.HANDSHAKE:
        await _handshake(adapter, result)
    else:
        await _readiness(adapter, binding, question or select_sample_question(questions), result)

    result.metadata["supports_json_mode"] = result.supports_json_mode
    result.completed_at = utcnow()
    logger.info(f"{level.value} diagnostics for {profile.id}: {result.status} ({result.summary})")
    return result
