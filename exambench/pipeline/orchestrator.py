"""Per-question pipeline: topology cascade, optional custom steps, then the answer step."""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Optional, Sequence

from exambench.adapters.base import BaseChatAdapter, ChatMessage, CompletionResult
from exambench.adapters.schemas import SchemaHint
from exambench.capture.sanitization import redact_secrets
from exambench.catalog import TopologyCatalog
from exambench.errors import RunCancelled
from exambench.logging import get_logger
from exambench.parsing import echoed_topology_ids, parse_model_response
from exambench.pipeline.resolvers import StageResolver, consistency_notes, resolver_for_step
from exambench.pipeline.steps import ANSWER_STEP_ID, DEFAULT_SYSTEM_PROMPT, STAGE_BY_STEP_ID, normalize_steps
from exambench.pipeline.templates import TemplateContext, render_template, validate_steps
from exambench.scoring.answers import evaluate_answer
from exambench.scoring.topology import evaluate_topology, has_expected_labels
from exambench.types import (
    Attempt,
    Evaluation,
    ImageSummary,
    ModelBinding,
    ModelResponse,
    Profile,
    Question,
    QuestionSnapshot,
    StepConfig,
    StepResult,
    TopologyPrediction,
    utcnow,
)

logger = get_logger(__name__)


def question_snapshot(question: Question) -> QuestionSnapshot:
    return QuestionSnapshot(
        prompt=question.prompt,
        type=question.type,
        difficulty=question.difficulty,
        options=list(question.options),
        answer=question.answer,
        solution=question.solution,
        metadata=question.metadata,
    )


def _sum_usage(steps: Sequence[StepResult], field: str) -> Optional[int]:
    values = [getattr(s.usage, field) for s in steps if s.usage and getattr(s.usage, field) is not None]
    return sum(values) if values else None


class PipelineOrchestrator:
    """Runs the configured steps for one question at a time against a text binding."""

    def __init__(
        self,
        adapter: BaseChatAdapter,
        binding: ModelBinding,
        catalog: TopologyCatalog,
        steps: Optional[Sequence[StepConfig]] = None,
        *,
        profile: Optional[Profile] = None,
        low_confidence_threshold: Optional[float] = None,
    ) -> None:
        self.adapter = adapter
        self.binding = binding
        self.catalog = catalog
        self.profile = profile
        self.steps = normalize_steps(steps)
        validate_steps(self.steps)
        self.has_cascade = any(step.id in STAGE_BY_STEP_ID for step in self.steps)
        self.low_confidence_threshold = low_confidence_threshold
        self.system_prompt = binding.default_system_prompt.strip() or DEFAULT_SYSTEM_PROMPT

    def _messages(self, prompt: str) -> list[ChatMessage]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]

    def _snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {
            "binding": redact_secrets(self.binding.model_dump(mode="json")),
            "steps": [],
        }
        if self.profile is not None:
            snapshot["profile"] = {"id": self.profile.id, "name": self.profile.name}
        return snapshot

    async def _complete(
        self,
        prompt: str,
        schema_hint: Optional[SchemaHint],
        prefer_json: Optional[bool],
        cancel_event: Optional[asyncio.Event],
    ) -> tuple[CompletionResult, float]:
        started = time.perf_counter()
        completion = await self.adapter.complete(
            self._messages(prompt),
            prefer_json=prefer_json,
            schema_hint=schema_hint,
            temperature=self.binding.temperature,
            max_tokens=self.binding.max_output_tokens,
            cancel_event=cancel_event,
        )
        return completion, (time.perf_counter() - started) * 1000

    def _step_result(
        self,
        step: StepConfig,
        order: int,
        prompt: str,
        completion: CompletionResult,
        latency_ms: float,
    ) -> StepResult:
        return StepResult(
            id=step.id,
            label=step.label,
            order=order,
            prompt=prompt,
            request_payload=redact_secrets(completion.request_payload),
            response_payload=completion.raw,
            response_text=completion.text,
            latency_ms=latency_ms,
            usage=completion.usage,
            json_format=completion.json_format,
        )

    async def _run_stage(
        self,
        resolver: StageResolver,
        step: StepConfig,
        order: int,
        ctx: TemplateContext,
        question: Question,
        cancel_event: Optional[asyncio.Event],
    ) -> StepResult:
        prompt = resolver.build_prompt(step, ctx)
        completion, latency_ms = await self._complete(prompt, resolver.schema_hint, None, cancel_event)
        outcome = resolver.parse(completion.text, ctx.prediction)
        ctx.prediction.commit(outcome.result)
        for note in outcome.notes:
            logger.debug(f"[{question.id}] {step.id}: {note}")

        result = self._step_result(step, order, prompt, completion, latency_ms)
        result.topology_stage = outcome.result
        result.notes = outcome.notes
        result.evaluation = evaluate_topology(question.metadata, ctx.prediction, self.catalog)
        return result

    async def _run_answer(
        self,
        step: StepConfig,
        order: int,
        ctx: TemplateContext,
        question: Question,
        cancel_event: Optional[asyncio.Event],
    ) -> StepResult:
        prompt = render_template(step.prompt_template, ctx)
        completion, latency_ms = await self._complete(prompt, SchemaHint.ANSWER, None, cancel_event)
        response = parse_model_response(completion.text)

        result = self._step_result(step, order, prompt, completion, latency_ms)
        result.model_response = response
        result.evaluation = evaluate_answer(question, response)
        if self.has_cascade:
            result.notes = consistency_notes("answer", echoed_topology_ids(response.raw), ctx.prediction)
            for note in result.notes:
                logger.debug(f"[{question.id}] {step.id}: {note}")
        return result

    async def _run_plain(
        self,
        step: StepConfig,
        order: int,
        ctx: TemplateContext,
        cancel_event: Optional[asyncio.Event],
    ) -> StepResult:
        prompt = render_template(step.prompt_template, ctx)
        completion, latency_ms = await self._complete(prompt, None, False, cancel_event)
        return self._step_result(step, order, prompt, completion, latency_ms)

    async def run_question(
        self,
        question: Question,
        *,
        run_id: str = "",
        cancel_event: Optional[asyncio.Event] = None,
        image_summaries: Optional[Sequence[ImageSummary]] = None,
    ) -> Attempt:
        """Execute every step for ``question`` and grade the result.

        Any failure other than cancellation ends this question only: the
        attempt keeps the steps that completed and carries the error message.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Benchmark run cancelled")

        started_at = utcnow()
        started = time.perf_counter()
        ctx = TemplateContext(
            question=question,
            catalog=self.catalog,
            prediction=TopologyPrediction(),
            previous_steps=[],
            image_summaries=list(image_summaries or []),
        )
        request_payload = self._snapshot()
        answer_step: Optional[StepResult] = None
        ran_cascade = False
        error: Optional[str] = None

        try:
            for order, step in enumerate(self.steps):
                resolver = resolver_for_step(step.id, self.catalog, self.low_confidence_threshold)
                if resolver is not None:
                    result = await self._run_stage(resolver, step, order, ctx, question, cancel_event)
                    ran_cascade = True
                elif step.id == ANSWER_STEP_ID:
                    result = await self._run_answer(step, order, ctx, question, cancel_event)
                    answer_step = result
                else:
                    result = await self._run_plain(step, order, ctx, cancel_event)
                ctx.previous_steps.append(result)
                request_payload["steps"].append({"id": step.id, "label": step.label, "prompt": result.prompt})
        except RunCancelled:
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(f"[{question.id}] failed after {len(ctx.previous_steps)} step(s): {error}")

        steps = ctx.previous_steps
        if error is not None:
            evaluation = Evaluation(passed=False, score=0.0, notes=error)
        elif answer_step is not None and answer_step.evaluation is not None:
            evaluation = answer_step.evaluation
        else:
            evaluation = Evaluation(passed=False, score=0.0, notes="No answer step configured.")

        # a labelled question counts as a topology miss even if the cascade failed before committing
        grade_topology = ran_cascade or (self.has_cascade and has_expected_labels(question.metadata))
        model_response: Optional[ModelResponse] = answer_step.model_response if answer_step else None
        return Attempt(
            id=uuid.uuid4().hex,
            run_id=run_id,
            question_id=question.id,
            started_at=started_at,
            completed_at=utcnow(),
            latency_ms=(time.perf_counter() - started) * 1000,
            prompt_tokens=_sum_usage(steps, "prompt_tokens"),
            completion_tokens=_sum_usage(steps, "completion_tokens"),
            total_tokens=_sum_usage(steps, "total_tokens"),
            request_payload=request_payload,
            response_payload=answer_step.response_payload if answer_step else None,
            response_text=answer_step.response_text if answer_step else "",
            model_response=model_response,
            evaluation=evaluation,
            topology_prediction=ctx.prediction if grade_topology else None,
            topology_evaluation=(
                evaluate_topology(question.metadata, ctx.prediction, self.catalog) if grade_topology else None
            ),
            steps=steps,
            image_summaries=list(ctx.image_summaries),
            error=error,
            question_snapshot=question_snapshot(question),
        )
