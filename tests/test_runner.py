"""Tests for the run driver: adapter resolution, resilience, cancellation, artifacts."""

import asyncio
import json

import pytest

from exambench.adapters.offline_stub import OfflineStubAdapter
from exambench.adapters.openai_compat import OpenAICompatibleAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.catalog import TopologyCatalog
from exambench.dataset import load_question_bank
from exambench.errors import ConnectivityError, JsonModeUnsupported, RunCancelled
from exambench.runners.runner import execute_run, resolve_adapter
from exambench.types import ModelBinding, Profile, RunStatus

DATA = "data"
BINDING = ModelBinding(id="text", model_id="qwen-7b")
PROFILE = Profile(id="local", name="Local Qwen", bindings=[BINDING])


def _questions():
    return load_question_bank(f"{DATA}/sample_questions.json").questions


def _catalog():
    return TopologyCatalog.load(f"{DATA}/sample_topology.json")


def _run(adapter, tmp_path, **kwargs):
    return asyncio.run(
        execute_run(
            kwargs.pop("questions", _questions()),
            PROFILE,
            _catalog(),
            adapter=adapter,
            runs_dir=tmp_path,
            **kwargs,
        )
    )


# -- adapter resolution ------------------------------------------------------

def test_default_adapter_is_openai_compat():
    assert isinstance(resolve_adapter("", BINDING), OpenAICompatibleAdapter)
    assert isinstance(resolve_adapter("lmstudio", BINDING), OpenAICompatibleAdapter)


def test_offline_names_resolve_to_stub():
    assert isinstance(resolve_adapter("offline", BINDING), OfflineStubAdapter)
    assert isinstance(resolve_adapter("offline_stub", BINDING), OfflineStubAdapter)


def test_unknown_adapter_falls_back_to_openai_compat():
    assert isinstance(resolve_adapter("nonexistent", BINDING), OpenAICompatibleAdapter)


# -- runs --------------------------------------------------------------------

def test_offline_run_writes_artifacts(tmp_path):
    progress = []
    run = _run(
        OfflineStubAdapter(),
        tmp_path,
        label="smoke",
        on_progress=lambda attempt, fraction, metrics: progress.append((attempt.question_id, fraction)),
    )

    assert run.status is RunStatus.COMPLETED
    assert len(run.attempts) == 6
    assert run.metrics.passed_count + run.metrics.failed_count == 6
    assert progress[-1] == ("q-mcq-002", 1.0)
    assert [p[1] for p in progress] == sorted(p[1] for p in progress)

    run_dir = tmp_path / run.id
    assert (run_dir / "manifest.json").exists()
    assert (run_dir / "attempts.jsonl").exists()
    summary = json.loads((run_dir / "summary.json").read_text())
    assert summary["id"] == run.id
    assert summary["status"] == "completed"
    assert "attempts" not in summary
    lines = (run_dir / "attempts.jsonl").read_text().strip().splitlines()
    assert len(lines) == 6
    manifest = json.loads((run_dir / "manifest.json").read_text())
    assert manifest["adapter"] == "offline_stub"
    assert manifest["label"] == "smoke"


def test_scripted_run_scores_answers(tmp_path):
    adapter = OfflineStubAdapter(
        {
            SchemaHint.TOPOLOGY_SUBJECT.value: {"subjectId": "math", "confidence": 0.9},
            SchemaHint.TOPOLOGY_TOPIC.value: {"topicId": "algebra", "confidence": 0.9},
            SchemaHint.TOPOLOGY_SUBTOPIC.value: {"subtopicId": "linear-equations", "confidence": 0.9},
            SchemaHint.ANSWER.value: {"answer": "B", "confidence": 0.9},
        }
    )
    questions = [q for q in _questions() if q.id == "q-mcq-001"]
    run = _run(adapter, tmp_path, questions=questions)
    assert run.metrics.accuracy == 1.0
    assert run.metrics.topology_accuracy == 1.0
    assert "Accuracy 100.0% across 1 questions." in run.summary


def test_bad_question_does_not_stop_the_run(tmp_path):
    adapter = OfflineStubAdapter(
        {SchemaHint.ANSWER.value: [ValueError("malformed body"), {"answer": "A"}]}
    )
    run = _run(adapter, tmp_path, questions=_questions()[:3], run_preflight=False)

    assert run.status is RunStatus.COMPLETED
    assert len(run.attempts) == 3
    assert run.attempts[0].error == "malformed body"
    assert run.attempts[1].error is None
    assert run.attempts[2].error is None


def test_cancellation_stops_between_questions(tmp_path):
    cancel_event = asyncio.Event()

    def on_progress(attempt, fraction, metrics):
        if len(seen) == 1:
            cancel_event.set()
        seen.append(attempt.question_id)

    seen: list[str] = []
    with pytest.raises(RunCancelled):
        _run(OfflineStubAdapter(), tmp_path, cancel_event=cancel_event, on_progress=on_progress)

    assert seen == ["q-mcq-001", "q-msq-001"]
    run_dirs = list(tmp_path.iterdir())
    assert len(run_dirs) == 1
    summary = json.loads((run_dirs[0] / "summary.json").read_text())
    assert summary["status"] == "cancelled"
    assert summary["metrics"]["passed_count"] + summary["metrics"]["failed_count"] == 2


def test_preflight_connectivity_failure_aborts(tmp_path):
    class Unreachable(OfflineStubAdapter):
        async def list_models(self):
            raise ConnectivityError("GET http://localhost:1234/v1/models failed")

    with pytest.raises(ConnectivityError):
        _run(Unreachable(), tmp_path)
    summary = json.loads((next(tmp_path.iterdir()) / "summary.json").read_text())
    assert summary["status"] == "failed"
    assert summary["metrics"]["passed_count"] == 0


def test_preflight_json_mode_failure_aborts(tmp_path):
    adapter = OfflineStubAdapter({SchemaHint.ANSWER.value: JsonModeUnsupported("JSON mode required but not supported")})
    with pytest.raises(JsonModeUnsupported):
        _run(adapter, tmp_path, save=False)
    assert list(tmp_path.iterdir()) == []
