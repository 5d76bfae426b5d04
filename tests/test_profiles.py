"""Tests for profile loading, legacy migration and binding resolution."""

import json

import pytest

from exambench.config import Settings
from exambench.errors import DatasetError
from exambench.pipeline.steps import normalize_steps
from exambench.profiles import (
    DEFAULT_TEXT_BINDING_ID,
    load_profile,
    migrate_profile,
    profile_from_settings,
    resolve_binding,
)


def test_legacy_flat_profile_becomes_text_binding():
    raw = {
        "id": "legacy",
        "name": "Old profile",
        "baseUrl": "http://127.0.0.1:1234",
        "modelId": "mistral-7b",
        "temperature": 0.2,
        "maxOutputTokens": 512,
        "metadata": {"supportsJsonMode": False},
        "benchmarkSteps": [{"id": "analysis", "label": "Analysis"}, {"id": "answer", "label": "Answer"}],
    }
    migrated = migrate_profile(raw)

    assert migrated["schema_version"] == 2
    [binding] = migrated["bindings"]
    assert binding["id"] == DEFAULT_TEXT_BINDING_ID
    assert binding["model_id"] == "mistral-7b"
    assert binding["max_output_tokens"] == 512
    assert binding["supports_json_mode"] is False
    assert migrated["pipeline"][0]["binding_id"] == DEFAULT_TEXT_BINDING_ID
    assert [s["id"] for s in migrated["benchmark_steps"]] == ["topology", "answer"]


def test_example_yaml_profile():
    profile = load_profile("profiles/example.yaml")

    text = resolve_binding(profile, "text-to-text")
    assert text.id == "text-main"
    assert text.supports_json_mode is True
    # the vision binding exists but its pipeline entry is disabled
    assert resolve_binding(profile, "image-to-text") is None
    assert [s.id for s in normalize_steps(profile.benchmark_steps)] == [
        "topology-subject",
        "topology-topic",
        "topology-subtopic",
        "answer",
    ]


def test_json_profile_and_enabled_vision(tmp_path):
    path = tmp_path / "profile.json"
    path.write_text(
        json.dumps(
            {
                "id": "vision",
                "bindings": [
                    {"id": "t", "capability": "text-to-text", "modelId": "qwen"},
                    {"id": "v", "capability": "image-to-text", "modelId": "llava"},
                ],
                "pipeline": [
                    {"id": "image-to-text", "capability": "image-to-text", "bindingId": "v"},
                    {"id": "text-to-text", "capability": "text-to-text", "bindingId": "t"},
                ],
            }
        )
    )
    profile = load_profile(path)
    assert resolve_binding(profile, "image-to-text").model_id == "llava"
    assert profile.benchmark_steps is None


def test_missing_profile_raises(tmp_path):
    with pytest.raises(DatasetError):
        load_profile(tmp_path / "nope.yaml")


def test_non_mapping_profile_raises(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(DatasetError):
        load_profile(path)


def test_profile_from_settings(monkeypatch):
    monkeypatch.setenv("LMSTUDIO_BASE_URL", "http://gpu-box:1234")
    monkeypatch.setenv("MODEL_ID", "llama-3-8b")
    monkeypatch.setenv("VISION_MODEL_ID", "llava-1.6")
    profile = profile_from_settings(Settings())

    text = resolve_binding(profile, "text-to-text")
    assert text.base_url == "http://gpu-box:1234"
    assert text.model_id == "llama-3-8b"
    assert resolve_binding(profile, "image-to-text").model_id == "llava-1.6"
