"""Tolerant extraction of JSON payloads from raw model completions."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from exambench.errors import ParseError
from exambench.types import ModelResponse, TopologyStage, TopologyStageResult

_LEADING_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*")
_TRAILING_FENCE_RE = re.compile(r"\s*```$")
_ANSWER_LINE_RE = re.compile(r"answer\s*[:\-]\s*(.*)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"confidence\s*[:=]\s*([0-9]*\.?[0-9]+)", re.IGNORECASE)
_NULL_IDS = {"", "null", "none", "n/a", "unknown_id"}


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = _LEADING_FENCE_RE.sub("", cleaned)
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned)
    return cleaned.strip()


def _first_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span, skipping braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_json_strict(text: str) -> Any:
    """Parse a completion as JSON, tolerating code fences and surrounding prose."""
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    candidate = _first_json_object(cleaned)
    if candidate is not None:
        try:
            return json.loads(candidate)
        except ValueError:
            pass
    raise ParseError(f"Completion is not valid JSON: {cleaned[:120]!r}")


def parse_jsonish(text: str) -> Any:
    """Parsed JSON when possible, otherwise the cleaned raw text."""
    try:
        return parse_json_strict(text)
    except ParseError:
        return strip_code_fences(text)


def clamp_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return max(0.0, min(1.0, number))


def _answer_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return ", ".join(str(v).strip() for v in value)
    return ""


def parse_model_response(text: str) -> ModelResponse:
    """Map an answer-step completion to a ModelResponse.

    Non-JSON text is not an error: the ``answer: ...`` line, or failing that the
    whole cleaned text, becomes the answer so grading can still run.
    """
    parsed = parse_jsonish(text)
    if isinstance(parsed, dict):
        answer = _answer_text(parsed.get("answer"))
        explanation = parsed.get("explanation")
        return ModelResponse(
            answer=answer or strip_code_fences(text),
            explanation=explanation.strip() if isinstance(explanation, str) else None,
            confidence=clamp_confidence(parsed.get("confidence")),
            raw=parsed,
        )

    cleaned = parsed if isinstance(parsed, str) else strip_code_fences(text)
    match = _ANSWER_LINE_RE.search(cleaned)
    answer = match.group(1) if match else cleaned
    return ModelResponse(answer=answer.strip(), raw=cleaned)


def _read_id(container: dict[str, Any], stage: str) -> Optional[str]:
    for key in (f"{stage}Id", f"{stage}_id", stage, stage.capitalize(), f"{stage.capitalize()}Id"):
        if key not in container:
            continue
        value = container[key]
        if isinstance(value, dict):
            value = value.get("id")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip().lower() not in _NULL_IDS:
            return value.strip()
    return None


def echoed_topology_ids(raw: Any) -> dict[str, str]:
    """Topology ids a non-cascade reply echoed back, keyed by stage."""
    if not isinstance(raw, dict):
        return {}
    container = raw.get("topology") if isinstance(raw.get("topology"), dict) else raw
    echoed = {stage: _read_id(container, stage) for stage in ("subject", "topic", "subtopic")}
    return {stage: value for stage, value in echoed.items() if value}


def _id_from_text(text: str, stage: str) -> Optional[str]:
    # "topic" must not match inside "subtopic"
    pattern = re.compile(
        rf"(?<![a-z]){stage}\s*[_-]?\s*(?:id)?\s*[:=\-]\s*[\"']?([A-Za-z0-9_.\-]+)",
        re.IGNORECASE,
    )
    match = pattern.search(text)
    if not match or match.group(1).lower() in _NULL_IDS:
        return None
    return match.group(1)


def parse_stage_prediction(stage: TopologyStage, text: str) -> TopologyStageResult:
    """Map a cascade-stage completion to a stage result with any echoed parent ids."""
    parsed = parse_jsonish(text)
    if isinstance(parsed, dict):
        container = parsed.get("topology") if isinstance(parsed.get("topology"), dict) else parsed
        stage_id = _read_id(container, stage)
        if stage_id is None:
            generic = container.get("id")
            if isinstance(generic, str) and generic.strip().lower() not in _NULL_IDS:
                stage_id = generic.strip()
        return TopologyStageResult(
            stage=stage,
            id=stage_id,
            confidence=clamp_confidence(container.get("confidence", parsed.get("confidence"))),
            raw=parsed,
            subject_id=_read_id(container, "subject") if stage != "subject" else None,
            topic_id=_read_id(container, "topic") if stage == "subtopic" else None,
        )

    cleaned = parsed if isinstance(parsed, str) else strip_code_fences(text)
    confidence_match = _CONFIDENCE_RE.search(cleaned)
    return TopologyStageResult(
        stage=stage,
        id=_id_from_text(cleaned, stage),
        confidence=clamp_confidence(confidence_match.group(1)) if confidence_match else None,
        raw=cleaned,
        subject_id=_id_from_text(cleaned, "subject") if stage != "subject" else None,
        topic_id=_id_from_text(cleaned, "topic") if stage == "subtopic" else None,
    )
