"""Step prompt templates: a closed set of ``{{token}}`` placeholders, each with a renderer."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from exambench.catalog import TopologyCatalog
from exambench.errors import TemplateError
from exambench.pipeline import prompts
from exambench.types import ImageSummary, Question, StepConfig, StepResult, TopologyPrediction

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


class TemplateToken(str, Enum):
    QUESTION_CONTEXT = "questionContext"
    PREVIOUS_STEP_OUTPUTS = "previousStepOutputs"
    SUBJECT_CATALOG = "subjectCatalog"
    TOPIC_CATALOG = "topicCatalog"
    SUBTOPIC_CATALOG = "subtopicCatalog"
    TOPOLOGY_PREDICTION = "topologyPrediction"
    IMAGE_CONTEXT = "imageContext"


@dataclass
class TemplateContext:
    """Everything a token renderer may read while a question is in flight."""

    question: Question
    catalog: TopologyCatalog
    prediction: TopologyPrediction = field(default_factory=TopologyPrediction)
    previous_steps: list[StepResult] = field(default_factory=list)
    image_summaries: list[ImageSummary] = field(default_factory=list)


Renderer = Callable[[TemplateContext], str]

RENDERERS: dict[TemplateToken, Renderer] = {
    TemplateToken.QUESTION_CONTEXT: lambda ctx: prompts.question_context(ctx.question),
    TemplateToken.PREVIOUS_STEP_OUTPUTS: lambda ctx: prompts.previous_step_outputs(ctx.previous_steps),
    TemplateToken.SUBJECT_CATALOG: lambda ctx: prompts.subject_catalog(ctx.catalog).text,
    TemplateToken.TOPIC_CATALOG: lambda ctx: prompts.topic_catalog(
        ctx.catalog, ctx.prediction.subject_id
    ).text,
    TemplateToken.SUBTOPIC_CATALOG: lambda ctx: prompts.subtopic_catalog(
        ctx.catalog, ctx.prediction.subject_id, ctx.prediction.topic_id
    ).text,
    TemplateToken.TOPOLOGY_PREDICTION: lambda ctx: prompts.topology_prediction_json(ctx.prediction),
    TemplateToken.IMAGE_CONTEXT: lambda ctx: prompts.image_context(ctx.image_summaries),
}

_KNOWN = {token.value: token for token in TemplateToken}


def template_tokens(template: str) -> list[str]:
    return [m.group(1) for m in _TOKEN_RE.finditer(template or "")]


def validate_template(template: str, step_id: str = "") -> None:
    unknown = sorted({name for name in template_tokens(template) if name not in _KNOWN})
    if unknown:
        where = f" in step '{step_id}'" if step_id else ""
        raise TemplateError(f"Unsupported template token(s){where}: {', '.join(unknown)}")


def validate_steps(steps: Iterable[StepConfig]) -> None:
    for step in steps:
        validate_template(step.prompt_template, step.id)


def render_template(template: str, ctx: TemplateContext) -> str:
    validate_template(template)
    rendered = _TOKEN_RE.sub(lambda m: RENDERERS[_KNOWN[m.group(1)]](ctx), template)
    return _BLANK_RUN_RE.sub("\n\n", rendered).strip()
