"""Scripted adapter for framework-only testing and offline dry runs. No network access."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Union

from exambench.adapters.base import BaseChatAdapter, ChatMessage, CompletionResult
from exambench.adapters.schemas import SchemaHint
from exambench.errors import RunCancelled
from exambench.types import StepUsage

Reply = Union[str, dict[str, Any], Exception]

# Key used for completions sent without a schema hint (plain steps, vision).
TEXT_KEY = "text"

_DEFAULT_REPLIES: dict[str, Reply] = {
    SchemaHint.TOPOLOGY_SUBJECT.value: {"subjectId": "UNKNOWN", "confidence": 0.0},
    SchemaHint.TOPOLOGY_TOPIC.value: {"topicId": "UNKNOWN", "confidence": 0.0},
    SchemaHint.TOPOLOGY_SUBTOPIC.value: {"subtopicId": "UNKNOWN", "confidence": 0.0},
    SchemaHint.ANSWER.value: {"answer": "UNKNOWN", "confidence": 0.0},
    TEXT_KEY: "[offline stub]",
}


class OfflineStubAdapter(BaseChatAdapter):
    """Replays scripted replies keyed by schema hint.

    Each key maps to a single reply or a list consumed in order (the last entry
    repeats). Dict replies are serialised to JSON; exception replies are raised.
    """

    name = "offline_stub"

    def __init__(
        self,
        replies: Optional[dict[str, Union[Reply, list[Reply]]]] = None,
        models: Optional[list[str]] = None,
    ) -> None:
        self._replies: dict[str, list[Reply]] = {}
        for key, value in {**_DEFAULT_REPLIES, **(replies or {})}.items():
            self._replies[key] = list(value) if isinstance(value, list) else [value]
        self.models = models if models is not None else ["offline_stub"]
        self.calls: list[dict[str, Any]] = []

    def _next_reply(self, key: str) -> Reply:
        queue = self._replies.get(key) or self._replies[TEXT_KEY]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        prefer_json: Optional[bool] = None,
        schema_hint: Optional[SchemaHint] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CompletionResult:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Benchmark run cancelled")

        key = schema_hint.value if schema_hint is not None else TEXT_KEY
        self.calls.append({"messages": messages, "schema_hint": key, "prefer_json": prefer_json})
        reply = self._next_reply(key)
        if isinstance(reply, Exception):
            raise reply

        text = json.dumps(reply) if isinstance(reply, dict) else reply
        payload = {"model": "offline_stub", "messages": messages}
        return CompletionResult(
            text=text,
            usage=StepUsage(prompt_tokens=0, completion_tokens=0, total_tokens=0),
            raw={"choices": [{"message": {"role": "assistant", "content": text}}]},
            json_format="json_object" if prefer_json is not False else None,
            request_payload=payload,
        )

    async def list_models(self) -> list[dict[str, Any]]:
        return [{"id": model_id, "object": "model"} for model_id in self.models]
