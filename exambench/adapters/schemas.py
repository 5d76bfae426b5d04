"""Strict JSON schemas sent with ``response_format={"type": "json_schema"}``."""

from __future__ import annotations

from enum import Enum
from typing import Any


class SchemaHint(str, Enum):
    TOPOLOGY_SUBJECT = "topology_subject"
    TOPOLOGY_TOPIC = "topology_topic"
    TOPOLOGY_SUBTOPIC = "topology_subtopic"
    ANSWER = "answer"


_CONFIDENCE = {"type": "number", "minimum": 0, "maximum": 1, "description": "Confidence score"}


def _id_schema(field_name: str, description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            field_name: {"type": "string", "description": description},
            "confidence": _CONFIDENCE,
        },
        "required": [field_name],
        "additionalProperties": False,
    }


SCHEMAS: dict[SchemaHint, dict[str, Any]] = {
    SchemaHint.TOPOLOGY_SUBJECT: _id_schema("subjectId", "Subject identifier"),
    SchemaHint.TOPOLOGY_TOPIC: _id_schema("topicId", "Topic identifier"),
    SchemaHint.TOPOLOGY_SUBTOPIC: _id_schema("subtopicId", "Subtopic identifier"),
    SchemaHint.ANSWER: {
        "type": "object",
        "properties": {
            "answer": {"type": "string", "description": "The answer to the question"},
            "explanation": {"type": "string", "description": "Explanation of the answer"},
            "confidence": _CONFIDENCE,
        },
        "required": ["answer"],
        "additionalProperties": False,
    },
}


def json_schema_response_format(hint: SchemaHint) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": f"{hint.value}_response",
            "schema": SCHEMAS[hint],
            "strict": True,
        },
    }
