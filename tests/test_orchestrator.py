"""Tests for the per-question pipeline using the scripted offline adapter."""

import asyncio
import json

import pytest

from exambench.adapters.offline_stub import OfflineStubAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.catalog import TopologyCatalog
from exambench.errors import CompletionError, RunCancelled, TemplateError
from exambench.pipeline.orchestrator import PipelineOrchestrator
from exambench.pipeline.steps import ANSWER_STEP_ID, SUBJECT_STEP_ID, SUBTOPIC_STEP_ID, TOPIC_STEP_ID
from exambench.reporting.aggregate import aggregate_metrics
from exambench.types import (
    ImageSummary,
    ModelBinding,
    Profile,
    Question,
    QuestionMetadata,
    QuestionOption,
    QuestionType,
    SingleAnswer,
    StepConfig,
)

CATALOG = TopologyCatalog.from_dict(
    {
        "subjects": [
            {
                "id": "math",
                "name": "Mathematics",
                "topics": [
                    {"id": "arithmetic", "name": "Arithmetic", "subtopics": [{"id": "addition", "name": "Addition"}]},
                ],
            },
            {"id": "physics", "name": "Physics", "topics": [{"id": "mechanics", "name": "Mechanics"}]},
        ]
    }
)
BINDING = ModelBinding(id="text", model_id="qwen-7b", api_key="sk-live-abcdefghijklmnopqrstuvwxyz")
QUESTION = Question(
    id="q1",
    type=QuestionType.MCQ,
    prompt="What is 2 + 2?",
    options=[QuestionOption(id=i, order=i, text=t) for i, t in enumerate(["3", "4", "5", "6"])],
    answer=SingleAnswer(correct_option=1),
    metadata=QuestionMetadata(subject_id="math", topic_id="arithmetic", subtopic_id="addition"),
)


def _replies(subject="math", topic="arithmetic", subtopic="addition", answer="B"):
    return {
        SchemaHint.TOPOLOGY_SUBJECT.value: {"subjectId": subject, "confidence": 0.9},
        SchemaHint.TOPOLOGY_TOPIC.value: {"topicId": topic, "confidence": 0.8},
        SchemaHint.TOPOLOGY_SUBTOPIC.value: {"subtopicId": subtopic, "confidence": 0.7},
        SchemaHint.ANSWER.value: {"answer": answer, "explanation": "2 + 2 = 4", "confidence": 0.95},
    }


def _run(adapter, steps=None, **kwargs):
    orchestrator = PipelineOrchestrator(
        adapter, BINDING, CATALOG, steps, profile=Profile(id="p1", name="Local"), low_confidence_threshold=0.3
    )
    return asyncio.run(orchestrator.run_question(QUESTION, run_id="run-1", **kwargs))


def test_full_pipeline_passes():
    adapter = OfflineStubAdapter(_replies())
    attempt = _run(adapter)

    assert [s.id for s in attempt.steps] == [SUBJECT_STEP_ID, TOPIC_STEP_ID, SUBTOPIC_STEP_ID, ANSWER_STEP_ID]
    assert attempt.evaluation.passed
    assert attempt.evaluation.expected == "B"
    assert attempt.model_response.answer == "B"
    assert attempt.topology_evaluation.passed
    assert attempt.topology_prediction.subtopic_id == "addition"
    assert attempt.error is None
    assert attempt.run_id == "run-1"
    assert [c["schema_hint"] for c in adapter.calls] == ["topology_subject", "topology_topic", "topology_subtopic", "answer"]


def test_topic_prompt_is_scoped_to_predicted_subject():
    adapter = OfflineStubAdapter(_replies())
    _run(adapter)
    topic_prompt = adapter.calls[1]["messages"][1]["content"]
    assert "Subject: math (Mathematics)" in topic_prompt
    assert "mechanics" not in topic_prompt


def test_catalog_misses_are_noted_and_graded():
    adapter = OfflineStubAdapter(_replies(subject="S1", topic="T9"))
    attempt = _run(adapter)

    topology = attempt.topology_evaluation
    assert topology.metrics.subject_match is False
    assert topology.metrics.topic_match is False
    subject_step, topic_step, subtopic_step = attempt.steps[:3]
    assert any("not found in taxonomy" in note for note in subject_step.notes)
    assert any("not found in taxonomy" in note for note in topic_step.notes)

    # topic stage saw every topic because the subject did not resolve
    topic_prompt = adapter.calls[1]["messages"][1]["content"]
    assert "- mechanics :: Mechanics (subject: physics :: Physics)" in topic_prompt
    assert subtopic_step.evaluation.metrics.subject_expected is True
    assert subtopic_step.evaluation.metrics.subject_match is False

    # the answer itself is still graded independently
    assert attempt.evaluation.passed


def test_failed_step_becomes_failed_attempt():
    replies = _replies()
    replies[SchemaHint.ANSWER.value] = CompletionError("Chat completion failed: 500 - boom", status=500)
    attempt = _run(OfflineStubAdapter(replies))

    assert not attempt.evaluation.passed
    assert attempt.error == "Chat completion failed: 500 - boom"
    assert attempt.evaluation.notes == attempt.error
    assert [s.id for s in attempt.steps] == [SUBJECT_STEP_ID, TOPIC_STEP_ID, SUBTOPIC_STEP_ID]
    assert attempt.topology_evaluation.passed


def test_cancelled_before_start_raises():
    cancel_event = asyncio.Event()
    cancel_event.set()
    with pytest.raises(RunCancelled):
        _run(OfflineStubAdapter(_replies()), cancel_event=cancel_event)


def test_custom_step_output_feeds_later_steps():
    steps = [
        StepConfig(id="scratch", label="Scratchpad", prompt_template="Think about: {{questionContext}}"),
        StepConfig(id=ANSWER_STEP_ID, label="Answer", prompt_template="Earlier:\n{{previousStepOutputs}}\nAnswer now."),
    ]
    adapter = OfflineStubAdapter({**_replies(), "text": "It is probably four."})
    attempt = _run(adapter, steps)

    assert attempt.topology_prediction is None
    assert attempt.topology_evaluation is None
    assert adapter.calls[0]["prefer_json"] is False
    answer_prompt = adapter.calls[1]["messages"][1]["content"]
    assert '"responseText": "It is probably four."' in answer_prompt
    assert attempt.evaluation.passed


def test_no_answer_step_is_not_a_pass():
    steps = [StepConfig(id="topology", label="Topology")]
    attempt = _run(OfflineStubAdapter(_replies()), steps)
    assert not attempt.evaluation.passed
    assert attempt.evaluation.notes == "No answer step configured."
    assert attempt.topology_evaluation.passed


def test_unknown_template_token_is_rejected_at_construction():
    steps = [StepConfig(id=ANSWER_STEP_ID, prompt_template="{{questionBody}}")]
    with pytest.raises(TemplateError):
        PipelineOrchestrator(OfflineStubAdapter(), BINDING, CATALOG, steps)


def test_image_summaries_reach_the_prompt():
    adapter = OfflineStubAdapter(_replies())
    attempt = _run(adapter, image_summaries=[ImageSummary(url="img://1", text="A bar chart of sales")])
    assert "[Image 1] A bar chart of sales" in adapter.calls[0]["messages"][1]["content"]
    assert attempt.image_summaries[0].text == "A bar chart of sales"


def test_request_snapshot_redacts_secrets():
    attempt = _run(OfflineStubAdapter(_replies()))
    snapshot = attempt.request_payload
    assert snapshot["binding"]["api_key"] == "[KEY_REDACTED]"
    assert snapshot["profile"] == {"id": "p1", "name": "Local"}
    assert [s["id"] for s in snapshot["steps"]] == [SUBJECT_STEP_ID, TOPIC_STEP_ID, SUBTOPIC_STEP_ID, ANSWER_STEP_ID]
    assert "sk-live" not in json.dumps(attempt.model_dump(mode="json"))


def test_subject_stage_failure_still_counts_as_topology_miss():
    replies = _replies()
    replies[SchemaHint.TOPOLOGY_SUBJECT.value] = CompletionError("Chat completion failed: 500 - boom", status=500)
    failed = _run(OfflineStubAdapter(replies))
    passed = _run(OfflineStubAdapter(_replies()))

    assert failed.steps == []
    assert failed.topology_evaluation is not None
    assert failed.topology_evaluation.metrics.subject_match is False
    assert not failed.topology_evaluation.passed

    metrics = aggregate_metrics([passed, failed])
    assert metrics.topology_passed_count == 1
    assert metrics.topology_failed_count == 1
    assert metrics.topology_subject_accuracy == 0.5


def test_answer_step_echo_disagreeing_with_cascade_is_noted():
    replies = _replies()
    replies[SchemaHint.ANSWER.value] = {"answer": "B", "subjectId": "physics", "confidence": 0.9}
    attempt = _run(OfflineStubAdapter(replies))

    answer_step = attempt.steps[-1]
    assert answer_step.id == ANSWER_STEP_ID
    assert answer_step.notes == [
        "Inconsistent subject: answer stage echoed 'physics' but the cascade committed 'math'; keeping 'math'."
    ]
    assert attempt.topology_prediction.subject_id == "math"
    assert attempt.evaluation.passed


def test_answer_step_matching_echo_adds_no_notes():
    replies = _replies()
    replies[SchemaHint.ANSWER.value] = {"answer": "B", "subjectId": "math", "topicId": "arithmetic"}
    attempt = _run(OfflineStubAdapter(replies))
    assert attempt.steps[-1].notes == []
