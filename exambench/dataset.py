"""Question bank loading from JSON documents or JSONL files."""

from __future__ import annotations

import json
import re
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from exambench.errors import DatasetError
from exambench.logging import get_logger
from exambench.types import Question, QuestionBank, QuestionType

logger = get_logger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")
_TRUE_FALSE_OPTIONS = [
    {"id": 0, "order": 0, "text": "True"},
    {"id": 1, "order": 1, "text": "False"},
]


def _snake_keys(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {_CAMEL_RE.sub("_", str(k)).lower(): v for k, v in data.items()}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _question_type(value: Any) -> QuestionType:
    try:
        return QuestionType(str(value).upper())
    except ValueError:
        return QuestionType.DESCRIPTIVE


def _options(raw: dict[str, Any], content: dict[str, Any], qtype: QuestionType) -> list[dict[str, Any]]:
    source = raw.get("options")
    if source is None:
        source = content.get("options")
    if not source and qtype is QuestionType.TRUE_FALSE:
        return list(_TRUE_FALSE_OPTIONS)
    options = []
    for index, option in enumerate(source or []):
        if isinstance(option, str):
            option = {"text": option}
        option = _snake_keys(option)
        options.append(
            {
                "id": option.get("id", index),
                "order": option.get("order", index),
                "text": _text(option.get("text")),
            }
        )
    return options


def _answer(
    raw_answer: Any,
    qtype: QuestionType,
    options: list[dict[str, Any]],
    question_id: str,
) -> dict[str, Any]:
    answer = _snake_keys(raw_answer)
    if "kind" in answer:
        if isinstance(answer.get("range"), dict):
            answer["range"] = _snake_keys(answer["range"])
        return answer

    if qtype is QuestionType.MCQ:
        if answer.get("correct_option") is None:
            raise DatasetError(f"Invalid question {question_id}: MCQ answer has no correctOption")
        return {"kind": "single", "correct_option": answer["correct_option"]}
    if qtype is QuestionType.MSQ:
        if not answer.get("correct_options"):
            raise DatasetError(f"Invalid question {question_id}: MSQ answer has no correctOptions")
        return {"kind": "multiple", "correct_options": list(answer["correct_options"])}
    if qtype is QuestionType.NAT:
        return {
            "kind": "numeric",
            "range": _snake_keys(answer.get("range")),
            "accepted_answers": [str(a) for a in answer.get("accepted_answers") or []],
            "case_sensitive": bool(answer.get("case_sensitive")),
        }
    if qtype is QuestionType.TRUE_FALSE:
        if isinstance(answer.get("correct"), bool):
            value = answer["correct"]
        elif isinstance(answer.get("value"), bool):
            value = answer["value"]
        else:
            # correctOption points at the True/False option by order
            order = answer.get("correct_option")
            if order is None:
                raise DatasetError(f"Invalid question {question_id}: TRUE_FALSE answer has no value")
            chosen = next((o for o in options if o["order"] == order), None)
            value = chosen is not None and chosen["text"].strip().lower() == "true"
        return {"kind": "boolean", "value": value}
    return {
        "kind": "descriptive",
        "accepted_answers": [str(a) for a in answer.get("accepted_answers") or []],
        "case_sensitive": bool(answer.get("case_sensitive")),
    }


def _metadata(raw: dict[str, Any]) -> dict[str, Any]:
    metadata = _snake_keys(raw.get("metadata"))
    topology = _snake_keys(raw.get("topology")) or _snake_keys(metadata.pop("topology", None))
    return {
        "status": metadata.get("status") or "UNKNOWN",
        "has_images": bool(metadata.get("has_images")),
        "tags": list(metadata.get("tags") or []),
        "subject_id": topology.get("subject_id") or metadata.get("subject_id"),
        "topic_id": topology.get("topic_id") or metadata.get("topic_id"),
        "subtopic_id": topology.get("subtopic_id") or metadata.get("subtopic_id"),
    }


def question_from_dict(raw: dict[str, Any], index: int = 0) -> Question:
    """Build a Question from either the exported bank format or the normalised one."""
    data = _snake_keys(raw)
    content = _snake_keys(data.get("content"))
    qtype = _question_type(data.get("type"))
    question_id = str(data.get("id") or data.get("question_id") or f"q-{index + 1:03d}")
    options = _options(data, content, qtype)

    try:
        return Question.model_validate(
            {
                "id": question_id,
                "type": qtype,
                "prompt": _text(data.get("prompt")) or _text(content.get("question_text")),
                "difficulty": data.get("difficulty") or "UNKNOWN",
                "instructions": _text(data.get("instructions")) or _text(content.get("instructions")) or None,
                "options": options,
                "answer": _answer(data.get("answer"), qtype, options, question_id),
                "solution": _text(data.get("solution")) or None,
                "metadata": _metadata(data),
            }
        )
    except ValidationError as exc:
        raise DatasetError(f"Invalid question {question_id}: {exc}") from exc


def _describe_filters(filters: Any) -> list[str]:
    if isinstance(filters, list):
        return [str(f) for f in filters]
    filters = _snake_keys(filters)
    summary = []
    if filters.get("question_types"):
        summary.append(f"Types: {', '.join(filters['question_types'])}")
    if filters.get("status"):
        summary.append(f"Statuses: {', '.join(filters['status'])}")
    if filters.get("exclude_images"):
        summary.append("Images excluded")
    return summary


def _read_records(path: Path) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".jsonl":
            records = [json.loads(line) for line in f if line.strip()]
            return {}, records
        document = json.load(f)
    if isinstance(document, list):
        return {}, document
    if isinstance(document, dict):
        return document, list(document.get("questions") or [])
    raise DatasetError(f"Question bank {path} must be a JSON object or array")


def load_question_bank(path: str | Path, label: Optional[str] = None) -> QuestionBank:
    path = Path(path)
    if not path.exists():
        raise DatasetError(f"Question bank not found: {path}")
    try:
        header, records = _read_records(path)
    except ValueError as exc:
        raise DatasetError(f"Question bank {path} is not valid JSON: {exc}") from exc

    questions = [question_from_dict(record, index) for index, record in enumerate(records)]
    ids = Counter(q.id for q in questions)
    duplicates = [qid for qid, count in ids.items() if count > 1]
    if duplicates:
        raise DatasetError(f"Duplicate question ids in {path}: {', '.join(sorted(duplicates))}")

    stats = dict(header.get("stats") or {})
    stats.setdefault("countsByType", dict(Counter(q.type.value for q in questions)))
    stats.setdefault("withImages", sum(1 for q in questions if q.metadata.has_images))

    logger.info(f"Loaded {len(questions)} questions from {path}")
    return QuestionBank(
        label=label or header.get("label") or path.stem,
        generated_at=header.get("generatedAt") or header.get("generated_at"),
        filters=_describe_filters(header.get("filters")),
        stats=stats,
        questions=questions,
    )


def select_questions(
    questions: Iterable[Question],
    ids: Optional[Iterable[str]] = None,
    limit: int = 0,
    exclude_images: bool = False,
) -> list[Question]:
    selected = list(questions)
    if ids:
        wanted = list(ids)
        lookup = {q.id: q for q in selected}
        missing = [qid for qid in wanted if qid not in lookup]
        if missing:
            raise DatasetError(f"Unknown question id(s): {', '.join(missing)}")
        selected = [lookup[qid] for qid in wanted]
    if exclude_images:
        selected = [q for q in selected if not q.metadata.has_images]
    if limit > 0:
        selected = selected[:limit]
    return selected
