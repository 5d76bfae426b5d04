"""Benchmark runner: pre-flight, sequential question loop, progress reporting, artifacts."""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import httpx

from exambench.adapters.base import BaseChatAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.catalog import TopologyCatalog
from exambench.config import settings
from exambench.errors import DatasetError, RunCancelled
from exambench.logging import get_logger
from exambench.pipeline.orchestrator import PipelineOrchestrator
from exambench.profiles import resolve_binding
from exambench.reporting.aggregate import aggregate_metrics
from exambench.types import (
    Attempt,
    BenchmarkRun,
    DatasetInfo,
    ImageSummary,
    ModelBinding,
    Profile,
    Question,
    RunMetrics,
    RunStatus,
    utcnow,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[Attempt, float, RunMetrics], None]

JSON_PROBE_MESSAGES = [
    {"role": "system", "content": "You are a test assistant. Return only the requested JSON, no additional text."},
    {"role": "user", "content": 'Return the JSON object {"status": "ready"} with no additional text.'},
]


def _generate_run_id() -> str:
    now = datetime.now(timezone.utc)
    ts = now.strftime("%Y%m%d_%H%M%S")
    h = hashlib.sha256(now.isoformat().encode()).hexdigest()[:8]
    return f"{ts}_{h}"


def resolve_adapter(
    adapter_name: str,
    binding: ModelBinding,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseChatAdapter:
    """Resolve adapter by name.

    ``openai_compat`` (the default) talks to the binding's server;
    ``offline_stub`` replays canned replies without network access.
    """
    if adapter_name in ("", "lmstudio", "openai"):
        adapter_name = "openai_compat"
    if adapter_name == "offline":
        adapter_name = "offline_stub"

    if adapter_name == "offline_stub":
        from exambench.adapters.offline_stub import OfflineStubAdapter
        return OfflineStubAdapter(models=[binding.model_id or "offline_stub"])

    if adapter_name != "openai_compat":
        logger.warning(f"Unknown adapter '{adapter_name}', falling back to openai_compat")

    from exambench.adapters.openai_compat import OpenAICompatibleAdapter
    return OpenAICompatibleAdapter(binding, transport=transport)


def text_binding(profile: Profile) -> ModelBinding:
    binding = resolve_binding(profile, "text-to-text")
    if binding is None:
        raise DatasetError(f"Profile {profile.id} has no text-to-text binding configured")
    return binding


async def preflight(adapter: BaseChatAdapter, binding: ModelBinding, cancel_event: Optional[asyncio.Event] = None) -> str:
    """Check the server is reachable and, if declared, that JSON mode works.

    Returns the negotiated JSON format ("none" when JSON mode is not declared).
    Raises ConnectivityError / JsonModeUnsupported / ModelLoadError.
    """
    models = await adapter.list_models()
    model_ids = [str(m.get("id")) for m in models]
    logger.info(f"Server at {binding.base_url} reports {len(model_ids)} model(s)")
    if binding.model_id and model_ids and binding.model_id not in model_ids:
        logger.warning(f"Model '{binding.model_id}' not listed by server; it may be loaded on demand")

    if binding.supports_json_mode is False:
        return "none"
    probe = await adapter.complete(
        JSON_PROBE_MESSAGES,
        prefer_json=True,
        schema_hint=SchemaHint.ANSWER,
        temperature=0.0,
        cancel_event=cancel_event,
    )
    return probe.json_format or "none"


def _summary_text(metrics: RunMetrics, total: int) -> str:
    text = f"Accuracy {metrics.accuracy * 100:.1f}% across {total} questions."
    topo_total = metrics.topology_passed_count + metrics.topology_failed_count
    if topo_total:
        text += f" Topology {metrics.topology_accuracy * 100:.1f}% across {topo_total} labelled questions."
    return text


def write_artifacts(run: BenchmarkRun, run_dir: Path, adapter_name: str) -> None:
    run_dir.mkdir(parents=True, exist_ok=True)

    manifest = {
        "run_id": run.id,
        "label": run.label,
        "profile_id": run.profile_id,
        "profile_name": run.profile_name,
        "model_id": run.model_id,
        "adapter": adapter_name,
        "status": run.status.value,
        "questions": len(run.question_ids),
        "dataset": run.dataset.model_dump(mode="json"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    (run_dir / "manifest.json").write_text(json.dumps(manifest, indent=2))

    with open(run_dir / "attempts.jsonl", "w", encoding="utf-8") as f:
        for attempt in run.attempts:
            f.write(json.dumps(attempt.model_dump(mode="json"), ensure_ascii=False, default=str) + "\n")

    (run_dir / "summary.json").write_text(
        json.dumps(run.model_dump(mode="json", exclude={"attempts"}), indent=2, ensure_ascii=False, default=str)
    )
    logger.info(f"Artifacts written to {run_dir}")


async def execute_run(
    questions: Sequence[Question],
    profile: Profile,
    catalog: TopologyCatalog,
    *,
    adapter: Optional[BaseChatAdapter] = None,
    adapter_name: str = "openai_compat",
    label: str = "",
    dataset: Optional[DatasetInfo] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
    image_summaries: Optional[Mapping[str, Sequence[ImageSummary]]] = None,
    run_preflight: bool = True,
    runs_dir: Optional[Path] = None,
    save: bool = True,
) -> BenchmarkRun:
    """Execute a full benchmark run, one question at a time.

    A failing question becomes a failed attempt and the run continues.
    Cancellation and pre-flight failures stop the run: artifacts are still
    written with the final status, then the error propagates.
    """
    binding = text_binding(profile)
    adapter = adapter or resolve_adapter(adapter_name, binding)
    orchestrator = PipelineOrchestrator(adapter, binding, catalog, profile.benchmark_steps, profile=profile)

    run = BenchmarkRun(
        id=_generate_run_id(),
        label=label or f"{profile.name} run",
        profile_id=profile.id,
        profile_name=profile.name,
        model_id=binding.model_id,
        status=RunStatus.RUNNING,
        started_at=utcnow(),
        question_ids=[q.id for q in questions],
        dataset=dataset or DatasetInfo(total_questions=len(questions)),
    )
    run_dir = (runs_dir or settings.runs_dir) / run.id
    started = time.perf_counter()

    logger.info(
        f"Run {run.id}: profile={profile.id}, model={binding.model_id}, "
        f"adapter={adapter.name}, questions={len(questions)}"
    )

    try:
        if run_preflight:
            json_format = await preflight(adapter, binding, cancel_event)
            logger.info(f"Pre-flight passed (json_format={json_format})")

        for index, question in enumerate(questions):
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled("Benchmark run cancelled")

            attempt = await orchestrator.run_question(
                question,
                run_id=run.id,
                cancel_event=cancel_event,
                image_summaries=(image_summaries or {}).get(question.id),
            )
            run.attempts.append(attempt)
            run.metrics = aggregate_metrics(run.attempts)
            status = "PASS" if attempt.evaluation.passed else "FAIL"
            logger.info(f"[{index + 1}/{len(questions)}] {question.id}: {status}")
            if on_progress is not None:
                on_progress(attempt, (index + 1) / len(questions), run.metrics)

        run.status = RunStatus.COMPLETED
    except RunCancelled as exc:
        run.status = RunStatus.CANCELLED
        run.error = str(exc)
        logger.warning(f"Run {run.id} cancelled after {len(run.attempts)} question(s)")
        raise
    except Exception as exc:
        run.status = RunStatus.FAILED
        run.error = str(exc)
        logger.error(f"Run {run.id} aborted: {exc}")
        raise
    finally:
        run.completed_at = utcnow()
        run.duration_ms = (time.perf_counter() - started) * 1000
        run.metrics = aggregate_metrics(run.attempts)
        run.summary = _summary_text(run.metrics, len(run.attempts))
        if save:
            write_artifacts(run, run_dir, adapter.name)

    return run
