"""Load model profiles from YAML/JSON, migrating legacy flat-field profiles once at load."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from exambench.config import Settings, settings
from exambench.errors import DatasetError
from exambench.logging import get_logger
from exambench.pipeline.steps import LEGACY_TOPOLOGY_STEP_ID
from exambench.types import BindingCapability, ModelBinding, PipelineAssignment, Profile

logger = get_logger(__name__)

PROFILE_SCHEMA_VERSION = 2
DEFAULT_TEXT_BINDING_ID = "text-default"
DEFAULT_VISION_BINDING_ID = "vision-default"

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

_LEGACY_BINDING_FIELDS = (
    "base_url",
    "api_key",
    "model_id",
    "temperature",
    "max_output_tokens",
    "request_timeout_ms",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "default_system_prompt",
)

# Step ids renamed between profile schema versions
_RENAMED_STEP_IDS = {"analysis": LEGACY_TOPOLOGY_STEP_ID}


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _snake_keys(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {_snake(str(k)): v for k, v in data.items()}


def _binding(raw: dict[str, Any]) -> dict[str, Any]:
    binding = _snake_keys(raw)
    metadata = _snake_keys(binding.pop("metadata", None))
    if binding.get("supports_json_mode") is None and "supports_json_mode" in metadata:
        binding["supports_json_mode"] = metadata["supports_json_mode"]
    return binding


def migrate_profile(raw: dict[str, Any]) -> dict[str, Any]:
    """Bring a profile record of any schema version up to the current shape.

    Flat connection fields (``baseUrl``, ``modelId`` ...) from schema v1 become
    a single text binding, and the retired ``analysis`` step id becomes the
    legacy ``topology`` step, which the pipeline expands into the cascade.
    """
    data = _snake_keys(raw)
    legacy = _snake_keys(data.pop("legacy", None))
    metadata = _snake_keys(data.pop("metadata", None))
    for field in _LEGACY_BINDING_FIELDS + ("provider",):
        value = data.pop(field, None)
        if value is not None:
            legacy.setdefault(field, value)

    bindings = [_binding(b) for b in data.get("bindings") or [] if isinstance(b, dict)]
    for index, binding in enumerate(bindings):
        binding.setdefault("id", f"binding-{index + 1}")
    if not bindings:
        text_binding = {k: legacy[k] for k in _LEGACY_BINDING_FIELDS if k in legacy}
        text_binding.update(id=DEFAULT_TEXT_BINDING_ID, name="Text model", capability="text-to-text")
        if "supports_json_mode" in metadata:
            text_binding["supports_json_mode"] = metadata["supports_json_mode"]
        bindings = [text_binding]
        logger.info(f"Profile {data.get('id', '?')}: migrated legacy connection fields into a text binding")
    data["bindings"] = bindings

    text_id = next((b["id"] for b in bindings if b.get("capability", "text-to-text") == "text-to-text"), None)
    pipeline = [_snake_keys(p) for p in data.get("pipeline") or [] if isinstance(p, dict)]
    for index, step in enumerate(pipeline):
        step.setdefault("id", f"pipeline-{index + 1}")
        step.setdefault("capability", "text-to-text")
        if step["capability"] == "text-to-text" and not step.get("binding_id"):
            step["binding_id"] = text_id
    if not any(p["capability"] == "text-to-text" for p in pipeline):
        pipeline.append(
            {"id": "text-to-text", "label": "Text reasoning", "capability": "text-to-text", "binding_id": text_id}
        )
    data["pipeline"] = pipeline

    steps = data.get("benchmark_steps")
    if steps:
        migrated = []
        for step in steps:
            step = _snake_keys(step)
            step["id"] = _RENAMED_STEP_IDS.get(step.get("id"), step.get("id"))
            migrated.append(step)
        data["benchmark_steps"] = migrated
    else:
        data["benchmark_steps"] = None

    data.setdefault("id", "default")
    data["schema_version"] = PROFILE_SCHEMA_VERSION
    return data


def load_profile(path: str | Path) -> Profile:
    """Read a YAML or JSON profile file."""
    path = Path(path)
    if not path.exists():
        raise DatasetError(f"Profile not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            raw = json.load(f)
        else:
            raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise DatasetError(f"Profile {path} must be a mapping")
    try:
        return Profile.model_validate(migrate_profile(raw))
    except ValidationError as exc:
        raise DatasetError(f"Invalid profile {path}: {exc}") from exc


def resolve_binding(profile: Profile, capability: BindingCapability) -> Optional[ModelBinding]:
    """Binding assigned to ``capability`` by an enabled pipeline entry, else the first of that capability."""
    by_id = {b.id: b for b in profile.bindings}
    for assignment in profile.pipeline:
        if assignment.enabled and assignment.capability == capability and assignment.binding_id in by_id:
            binding = by_id[assignment.binding_id]
            if binding.capability == capability:
                return binding
    if capability == "image-to-text":
        # vision only counts when the pipeline enables it
        return None
    return next((b for b in profile.bindings if b.capability == capability), None)


def profile_from_settings(cfg: Optional[Settings] = None) -> Profile:
    """Single-binding profile built from environment configuration."""
    cfg = cfg or settings
    bindings = [
        ModelBinding(
            id=DEFAULT_TEXT_BINDING_ID,
            name="Text model",
            capability="text-to-text",
            base_url=cfg.base_url,
            api_key=cfg.api_key or None,
            model_id=cfg.model_id,
            temperature=cfg.temperature,
            max_output_tokens=cfg.max_output_tokens,
            request_timeout_ms=cfg.request_timeout_ms,
            supports_json_mode=cfg.supports_json_mode,
        )
    ]
    pipeline = [
        PipelineAssignment(
            id="text-to-text",
            label="Text reasoning",
            capability="text-to-text",
            binding_id=DEFAULT_TEXT_BINDING_ID,
        )
    ]
    if cfg.vision_model_id:
        bindings.append(
            ModelBinding(
                id=DEFAULT_VISION_BINDING_ID,
                name="Vision model",
                capability="image-to-text",
                base_url=cfg.base_url,
                api_key=cfg.api_key or None,
                model_id=cfg.vision_model_id,
                temperature=0.0,
                max_output_tokens=cfg.max_output_tokens,
                request_timeout_ms=cfg.request_timeout_ms,
                supports_json_mode=False,
            )
        )
        pipeline.insert(
            0,
            PipelineAssignment(
                id="image-to-text",
                label="Image preprocessing",
                capability="image-to-text",
                binding_id=DEFAULT_VISION_BINDING_ID,
            ),
        )
    return Profile(id="env", name=cfg.model_id or "Environment profile", bindings=bindings, pipeline=pipeline)
