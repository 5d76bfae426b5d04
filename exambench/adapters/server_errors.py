"""Heuristic classification of model-server error payloads.

Servers report response-format problems as free text, so the retry strategy
depends on sniffing the error body. All of that lives here so the patterns can
be tested and swapped per backend without touching the client.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Optional

_SCHEMA_REQUIRED_RE = re.compile(r"response[_-]?format.*must be|json_schema.*text", re.IGNORECASE | re.DOTALL)
_JSON_MODE_RE = re.compile(r"json mode|unable to parse|response[_-]?format", re.IGNORECASE)
_MODEL_LOAD_RE = re.compile(
    r"model.*not.*found|failed to load model|insufficient.*resources", re.IGNORECASE | re.DOTALL
)


class ServerErrorKind(str, Enum):
    SCHEMA_REQUIRED = "schema_required"
    JSON_MODE = "json_mode"
    MODEL_LOAD = "model_load"
    OTHER = "other"

    @property
    def is_json_rejection(self) -> bool:
        return self in (ServerErrorKind.SCHEMA_REQUIRED, ServerErrorKind.JSON_MODE)


def error_text(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(body)


def classify_server_error(body: Any, status: Optional[int] = None) -> ServerErrorKind:
    """Map an error response to the failure kind that drives negotiation."""
    text = error_text(body)
    if status == 404 or _MODEL_LOAD_RE.search(text):
        return ServerErrorKind.MODEL_LOAD
    if _SCHEMA_REQUIRED_RE.search(text):
        return ServerErrorKind.SCHEMA_REQUIRED
    if _JSON_MODE_RE.search(text):
        return ServerErrorKind.JSON_MODE
    return ServerErrorKind.OTHER
