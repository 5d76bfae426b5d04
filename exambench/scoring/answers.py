"""Deterministic answer grading, dispatched on the question's answer-key kind."""

from __future__ import annotations

import math
import re
import string
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional

from exambench.types import (
    BooleanAnswer,
    DescriptiveAnswer,
    Evaluation,
    EvaluationMetrics,
    ModelResponse,
    MultipleAnswer,
    NumericAnswer,
    NumericRange,
    Question,
    QuestionOption,
    SingleAnswer,
)

LETTERS = string.ascii_uppercase


def option_label(index: int) -> str:
    """Letter for the option at ``index`` in display order; numbers past Z."""
    return LETTERS[index] if index < len(LETTERS) else str(index + 1)


_QUOTES_RE = re.compile(r"[`\"'“”‘’]")
_SPACE_RE = re.compile(r"\s+")
_BARE_LETTER_RE = re.compile(r"^(?:option\s+|choice\s+)?\(?([a-z])\)?[.:]?$")
_LETTER_WITH_TEXT_RE = re.compile(r"^\(?([a-z])[).:]\s+(.+)$")
_MULTI_SPLIT_RE = re.compile(r"[,;/&\n]|\band\b")
_NUMBER_RE = re.compile(r"^\s*[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")
_TRUTHY = {"true", "t", "yes", "y", "1"}
_FALSY = {"false", "f", "no", "n", "0"}


def sanitize(value: str, case_sensitive: bool = False) -> str:
    cleaned = _SPACE_RE.sub(" ", _QUOTES_RE.sub("", value or "")).strip()
    return cleaned if case_sensitive else cleaned.lower()


@dataclass(frozen=True)
class _Choice:
    order: int
    letter: str
    text: str
    normalized: str


def _choices(options: list[QuestionOption]) -> list[_Choice]:
    ordered = sorted(options, key=lambda o: o.order)
    return [
        _Choice(
            order=option.order,
            letter=option_label(index),
            text=option.text,
            normalized=sanitize(option.text),
        )
        for index, option in enumerate(ordered)
    ]


def _by_letter(letter: str, choices: list[_Choice]) -> Optional[_Choice]:
    return next((c for c in choices if c.letter.lower() == letter), None)


def _match_choice(value: str, choices: list[_Choice]) -> Optional[_Choice]:
    """Resolve an answer fragment to an option by letter, or by exact option text."""
    raw = sanitize(value)
    if not raw:
        return None

    match = _BARE_LETTER_RE.match(raw) or _LETTER_WITH_TEXT_RE.match(raw)
    if match:
        choice = _by_letter(match.group(1), choices)
        if choice is not None:
            return choice

    return next((c for c in choices if c.normalized == raw), None)


def _letter_for(order: int, choices: list[_Choice]) -> str:
    choice = next((c for c in choices if c.order == order), None)
    return choice.letter if choice else str(order)


def _evaluation(
    expected: str,
    received: str,
    passed: bool,
    response: ModelResponse,
    notes: Optional[str] = None,
) -> Evaluation:
    return Evaluation(
        expected=expected,
        received=received,
        passed=passed,
        score=1.0 if passed else 0.0,
        notes=None if passed else notes,
        metrics=EvaluationMetrics(confidence=response.confidence),
    )


# ---------------------------------------------------------------------------
# Expected-answer rendering
# ---------------------------------------------------------------------------

def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _range_text(value_range: NumericRange) -> Optional[str]:
    low, high = value_range.min, value_range.max
    if low is not None and high is not None:
        return _fmt_number(low) if low == high else f"{_fmt_number(low)} - {_fmt_number(high)}"
    if low is not None:
        return f">= {_fmt_number(low)}"
    if high is not None:
        return f"<= {_fmt_number(high)}"
    return None


def expected_answer_text(question: Question) -> str:
    """Canonical string form of a question's answer key."""
    key = question.answer
    choices = _choices(question.options)
    if isinstance(key, SingleAnswer):
        return _letter_for(key.correct_option, choices)
    if isinstance(key, MultipleAnswer):
        return ",".join(sorted(_letter_for(o, choices) for o in key.correct_options))
    if isinstance(key, NumericAnswer):
        return _range_text(key.range) or ", ".join(key.accepted_answers) or "Numeric answer"
    if isinstance(key, BooleanAnswer):
        return "True" if key.value else "False"
    return ", ".join(key.accepted_answers) if key.accepted_answers else "Manual review"


# ---------------------------------------------------------------------------
# Graders
# ---------------------------------------------------------------------------

def _grade_single(question: Question, key: SingleAnswer, response: ModelResponse) -> Evaluation:
    choices = _choices(question.options)
    choice = _match_choice(response.answer, choices)
    passed = choice is not None and choice.order == key.correct_option
    notes = "Could not parse selected option." if choice is None else f"Selected option {choice.letter}."
    return _evaluation(
        expected=expected_answer_text(question),
        received=choice.letter if choice else response.answer,
        passed=passed,
        response=response,
        notes=notes,
    )


def _split_multi(value: str, choices: list[_Choice]) -> tuple[set[int], list[str]]:
    selected: set[int] = set()
    unresolved: list[str] = []
    for segment in (s.strip() for s in _MULTI_SPLIT_RE.split(value or "")):
        if not segment:
            continue
        choice = _match_choice(segment, choices)
        if choice is not None:
            selected.add(choice.order)
            continue
        compact = sanitize(segment)
        letters = [_by_letter(ch, choices) for ch in compact]
        if re.fullmatch(r"[a-z]{2,}", compact) and all(letters):
            selected.update(c.order for c in letters if c is not None)
            continue
        unresolved.append(segment)
    return selected, unresolved


def _grade_multiple(question: Question, key: MultipleAnswer, response: ModelResponse) -> Evaluation:
    choices = _choices(question.options)
    expected = set(key.correct_options)
    selected, unresolved = _split_multi(response.answer, choices)
    passed = selected == expected

    notes = f"Expected {len(expected)} option(s), received {len(selected)}."
    if unresolved:
        notes += f" Unrecognised: {', '.join(unresolved)}."
    received = ",".join(sorted(_letter_for(o, choices) for o in selected)) if selected else response.answer
    return _evaluation(expected_answer_text(question), received, passed, response, notes)


def parse_number(value: str) -> Optional[float]:
    match = _NUMBER_RE.match(value or "")
    if not match:
        return None
    number = float(match.group(0))
    return number if math.isfinite(number) else None


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def round_half_up(value: float, precision: int) -> Decimal:
    """Round to ``precision`` decimals; ties go away from zero."""
    return _to_decimal(value).quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def within_range(value: float, value_range: NumericRange) -> Optional[bool]:
    """Inclusive range check after rounding, or None when no bound is configured."""
    if value_range.min is None and value_range.max is None:
        return None
    try:
        candidate = (
            round_half_up(value, value_range.precision)
            if value_range.precision is not None
            else _to_decimal(value)
        )
    except InvalidOperation:
        return False
    if value_range.min is not None and candidate < _to_decimal(value_range.min):
        return False
    if value_range.max is not None and candidate > _to_decimal(value_range.max):
        return False
    return True


def _grade_numeric(question: Question, key: NumericAnswer, response: ModelResponse) -> Evaluation:
    number = parse_number(response.answer)
    passed = False

    if number is not None:
        in_range = within_range(number, key.range)
        if in_range is not None:
            passed = in_range
        else:
            passed = any(parse_number(a) == number for a in key.accepted_answers)

    if not passed and key.accepted_answers:
        received = response.answer.strip() if key.case_sensitive else response.answer.strip().lower()
        passed = any(
            (a.strip() if key.case_sensitive else a.strip().lower()) == received
            for a in key.accepted_answers
        )

    notes = (
        "Could not parse a number from the answer."
        if number is None
        else "Numeric answer outside accepted tolerance."
    )
    return _evaluation(expected_answer_text(question), response.answer.strip(), passed, response, notes)


def _read_boolean(value: str, choices: list[_Choice]) -> Optional[bool]:
    raw = sanitize(value).rstrip(".")
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    choice = _match_choice(value, choices)
    if choice is not None:
        if choice.normalized in _TRUTHY:
            return True
        if choice.normalized in _FALSY:
            return False
    return None


def _grade_boolean(question: Question, key: BooleanAnswer, response: ModelResponse) -> Evaluation:
    predicted = _read_boolean(response.answer, _choices(question.options))
    passed = predicted is not None and predicted == key.value
    received = response.answer if predicted is None else ("True" if predicted else "False")
    notes = "Could not parse boolean answer." if predicted is None else "Boolean answer does not match."
    return _evaluation(expected_answer_text(question), received, passed, response, notes)


def _grade_descriptive(question: Question, key: DescriptiveAnswer, response: ModelResponse) -> Evaluation:
    if not key.accepted_answers:
        return _evaluation(
            "Manual review", response.answer, False, response, "No reference answers available."
        )
    received = sanitize(response.answer, key.case_sensitive)
    passed = any(sanitize(a, key.case_sensitive) == received for a in key.accepted_answers)
    return _evaluation(
        expected_answer_text(question),
        response.answer,
        passed,
        response,
        "Answer does not match any accepted answer.",
    )


_GRADERS: dict[str, Callable[[Question, Any, ModelResponse], Evaluation]] = {
    "single": _grade_single,
    "multiple": _grade_multiple,
    "numeric": _grade_numeric,
    "boolean": _grade_boolean,
    "descriptive": _grade_descriptive,
}


def evaluate_answer(question: Question, response: ModelResponse) -> Evaluation:
    """Grade a parsed model response against the question's typed answer key."""
    key = question.answer
    return _GRADERS[key.kind](question, key, response)
