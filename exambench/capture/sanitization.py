"""Redact secrets from request snapshots and log text."""

from __future__ import annotations

import re
from typing import Any

_API_KEY_RE = re.compile(r"(sk-[a-zA-Z0-9_-]{16,})")
_BEARER_RE = re.compile(r"(Bearer\s+)[^\s\"']+", re.IGNORECASE)
_SECRET_FIELDS = {"api_key", "apikey", "authorization", "token", "secret", "password"}

REDACTED = "[KEY_REDACTED]"


def sanitize_text(text: str) -> str:
    """Replace API-key-like patterns with redaction tokens."""
    text = _API_KEY_RE.sub(REDACTED, text)
    text = _BEARER_RE.sub(lambda m: m.group(1) + REDACTED, text)
    return text


def redact_secrets(value: Any) -> Any:
    """Return a copy of a JSON-like structure with secret fields masked."""
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            normalized = str(key).lower().replace("-", "_")
            if normalized in _SECRET_FIELDS or normalized.replace("_", "") in _SECRET_FIELDS:
                redacted[key] = REDACTED if item else item
            else:
                redacted[key] = redact_secrets(item)
        return redacted
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    if isinstance(value, str):
        return sanitize_text(value)
    return value
