"""Base adapter interface."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from exambench.adapters.schemas import SchemaHint
from exambench.types import StepUsage

ChatMessage = dict[str, Any]


@dataclass
class CompletionResult:
    text: str
    usage: Optional[StepUsage] = None
    raw: Any = None
    fallback_used: bool = False
    json_format: Optional[str] = None
    request_payload: dict[str, Any] = field(default_factory=dict)


class BaseChatAdapter(abc.ABC):
    """All adapters speak the chat-completion contract used by the pipeline."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send one chat completion and return its text and usage."""
        ...

    @abc.abstractmethod
    async def list_models(self) -> list[dict[str, Any]]:
        """Return the models reported by the server."""
        ...
