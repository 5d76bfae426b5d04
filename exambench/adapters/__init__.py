"""Adapters for sending chat completions to different backends."""

from exambench.adapters.base import BaseChatAdapter, CompletionResult
from exambench.adapters.offline_stub import OfflineStubAdapter
from exambench.adapters.openai_compat import OpenAICompatibleAdapter
from exambench.adapters.schemas import SchemaHint

__all__ = [
    "BaseChatAdapter",
    "CompletionResult",
    "OfflineStubAdapter",
    "OpenAICompatibleAdapter",
    "SchemaHint",
]
