"""Tests for the fail-fast compatibility check."""

import asyncio

from exambench.adapters.offline_stub import OfflineStubAdapter
from exambench.adapters.schemas import SchemaHint
from exambench.errors import ConnectivityError, JsonModeUnsupported
from exambench.diagnostics.compatibility import run_compatibility_check
from exambench.types import ModelBinding, PipelineAssignment, Profile

TEXT = ModelBinding(id="text", model_id="qwen-7b", base_url="http://lm.test")
VISION = ModelBinding(id="vision", capability="image-to-text", model_id="llava", base_url="http://lm.test")

GOOD_REPLIES = {
    SchemaHint.TOPOLOGY_SUBJECT.value: {"subjectId": "math", "confidence": 0.9},
    SchemaHint.TOPOLOGY_TOPIC.value: {"topicId": "arithmetic", "confidence": 0.9},
    SchemaHint.TOPOLOGY_SUBTOPIC.value: {"subtopicId": "addition", "confidence": 0.9},
    SchemaHint.ANSWER.value: {"answer": "B", "confidence": 0.9},
}


def _profile(vision_enabled: bool | None = None) -> Profile:
    bindings = [TEXT]
    pipeline = [PipelineAssignment(id="text-to-text", capability="text-to-text", binding_id="text")]
    if vision_enabled is not None:
        bindings.append(VISION)
        pipeline.insert(
            0,
            PipelineAssignment(id="image-to-text", capability="image-to-text", binding_id="vision", enabled=vision_enabled),
        )
    return Profile(id="p1", name="Local", bindings=bindings, pipeline=pipeline)


def _statuses(result):
    return {step.id: step.status for step in result.steps}


def test_compatible_text_only_profile():
    result = asyncio.run(run_compatibility_check(_profile(), adapter=OfflineStubAdapter(GOOD_REPLIES)))

    assert result.compatible
    assert result.json_format == "json_object"
    assert result.summary == "Compatible - Supports json_object format"
    assert _statuses(result) == {"connectivity": "pass", "json_mode": "pass", "protocol": "pass"}
    assert result.metadata["topology_response"]["subject_id"] == "math"


def test_connectivity_failure_skips_remaining_steps():
    class Unreachable(OfflineStubAdapter):
        async def list_models(self):
            raise ConnectivityError("connection refused")

    result = asyncio.run(run_compatibility_check(_profile(), adapter=Unreachable(GOOD_REPLIES)))

    assert not result.compatible
    assert result.summary == "Server not reachable at http://lm.test"
    assert _statuses(result) == {"connectivity": "fail", "json_mode": "skipped", "protocol": "skipped"}
    assert result.steps[0].error == "connection refused"


def test_json_mode_rejection_is_incompatible():
    replies = {**GOOD_REPLIES, SchemaHint.ANSWER.value: JsonModeUnsupported("JSON mode required but not supported")}
    result = asyncio.run(run_compatibility_check(_profile(), adapter=OfflineStubAdapter(replies)))

    assert not result.compatible
    assert result.summary == "JSON mode test failed"
    assert _statuses(result)["protocol"] == "skipped"


def test_missing_topology_ids_fail_protocol():
    replies = {**GOOD_REPLIES, SchemaHint.TOPOLOGY_SUBTOPIC.value: {"confidence": 0.2}}
    result = asyncio.run(run_compatibility_check(_profile(), adapter=OfflineStubAdapter(replies)))

    assert not result.compatible
    assert result.summary == "Topology classification missing required fields"
    assert _statuses(result)["protocol"] == "fail"


def test_disabled_vision_binding_is_not_checked():
    result = asyncio.run(run_compatibility_check(_profile(vision_enabled=False), adapter=OfflineStubAdapter(GOOD_REPLIES)))
    assert result.compatible
    assert "vision" not in _statuses(result)


def test_vision_success_is_reported():
    result = asyncio.run(
        run_compatibility_check(
            _profile(vision_enabled=True),
            adapter=OfflineStubAdapter(GOOD_REPLIES),
            vision_adapter=OfflineStubAdapter({"text": "A single white pixel."}),
        )
    )
    assert result.compatible
    assert result.summary == "Compatible - Supports json_object format with vision"
    assert _statuses(result)["vision"] == "pass"


def test_vision_failure_flips_verdict():
    result = asyncio.run(
        run_compatibility_check(
            _profile(vision_enabled=True),
            adapter=OfflineStubAdapter(GOOD_REPLIES),
            vision_adapter=OfflineStubAdapter({"text": "   "}),
        )
    )
    assert not result.compatible
    assert result.summary == "Vision model test failed: Vision model did not extract any text"
    assert _statuses(result)["protocol"] == "pass"
    assert _statuses(result)["vision"] == "fail"


def test_vision_failure_after_protocol_failure_is_skipped():
    replies = {**GOOD_REPLIES, SchemaHint.TOPOLOGY_SUBJECT.value: {"confidence": 0.1}}
    result = asyncio.run(
        run_compatibility_check(
            _profile(vision_enabled=True),
            adapter=OfflineStubAdapter(replies),
            vision_adapter=OfflineStubAdapter({"text": "pixel"}),
        )
    )
    assert not result.compatible
    assert _statuses(result)["vision"] == "skipped"
