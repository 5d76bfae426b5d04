"""Adapter for OpenAI-compatible chat-completion servers (LM Studio, llama.cpp, vLLM)."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

import httpx

from exambench.adapters.base import BaseChatAdapter, ChatMessage, CompletionResult
from exambench.adapters.schemas import SchemaHint, json_schema_response_format
from exambench.adapters.server_errors import ServerErrorKind, classify_server_error, error_text
from exambench.errors import (
    ClientError,
    CompletionError,
    ConnectivityError,
    JsonModeUnsupported,
    ModelLoadError,
    RequestTimeout,
    RunCancelled,
)
from exambench.logging import get_logger
from exambench.types import ModelBinding, StepUsage

logger = get_logger(__name__)

T = TypeVar("T")


async def race_cancel(awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first, in which case abort it."""
    if cancel_event is None:
        return await awaitable
    request_task = asyncio.ensure_future(awaitable)
    if cancel_event.is_set():
        request_task.cancel()
        await asyncio.gather(request_task, return_exceptions=True)
        raise RunCancelled("Benchmark run cancelled")

    cancel_task = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [t for t in (request_task, cancel_task) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    if request_task in done:
        return request_task.result()
    raise RunCancelled("Benchmark run cancelled while a request was in flight")


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _extract_text(data: dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    first = choices[0] or {}
    message = first.get("message") or {}
    delta = first.get("delta") or {}
    return message.get("content") or delta.get("content") or ""


def _map_usage(data: dict[str, Any]) -> Optional[StepUsage]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return StepUsage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


class OpenAICompatibleAdapter(BaseChatAdapter):
    name = "openai_compat"

    def __init__(
        self,
        binding: ModelBinding,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.binding = binding
        self._transport = transport

    @property
    def timeout_s(self) -> float:
        return max(0.001, self.binding.request_timeout_ms / 1000.0)

    def _url(self, path: str) -> str:
        base = self.binding.base_url.rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return f"{base}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.binding.api_key:
            headers["Authorization"] = f"Bearer {self.binding.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> httpx.Response:
        url = self._url(path)
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            try:
                async with asyncio.timeout(self.timeout_s):
                    return await race_cancel(
                        client.request(method, url, json=body, headers=self._headers()),
                        cancel_event,
                    )
            except (TimeoutError, httpx.TimeoutException) as exc:
                raise RequestTimeout(
                    f"{method} {path} timed out after {self.binding.request_timeout_ms}ms"
                ) from exc
            except httpx.TransportError as exc:
                raise ConnectivityError(f"{method} {url} failed: {exc}") from exc

    def build_payload(
        self,
        messages: list[ChatMessage],
        *,
        json_format: Optional[str] = None,
        schema_hint: Optional[SchemaHint] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        b = self.binding
        payload: dict[str, Any] = {
            "model": b.model_id,
            "temperature": b.temperature if temperature is None else temperature,
            "max_tokens": b.max_output_tokens if max_tokens is None else max_tokens,
            "messages": messages,
        }
        if b.top_p is not None:
            payload["top_p"] = b.top_p
        if b.frequency_penalty is not None:
            payload["frequency_penalty"] = b.frequency_penalty
        if b.presence_penalty is not None:
            payload["presence_penalty"] = b.presence_penalty

        if json_format == "json_object":
            payload["response_format"] = {"type": "json_object"}
        elif json_format == "json_schema" and schema_hint is not None:
            payload["response_format"] = json_schema_response_format(schema_hint)
        return payload

    async def _attempt(
        self,
        payload: dict[str, Any],
        cancel_event: Optional[asyncio.Event],
    ) -> tuple[httpx.Response, Any]:
        response = await self._request("POST", "/v1/chat/completions", body=payload, cancel_event=cancel_event)
        return response, _decode_body(response)

    @staticmethod
    def _success(
        response: httpx.Response,
        data: Any,
        payload: dict[str, Any],
        json_format: Optional[str],
    ) -> CompletionResult:
        if not isinstance(data, dict):
            raise CompletionError(
                f"Chat completion returned a non-JSON body: {error_text(data)[:200]}",
                status=response.status_code,
                body=data,
            )
        return CompletionResult(
            text=_extract_text(data),
            usage=_map_usage(data),
            raw=data,
            fallback_used=False,
            json_format=json_format,
            request_payload=payload,
        )

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
        wants_json = prefer_json
        if wants_json is None:
            wants_json = self.binding.supports_json_mode is not False

        params = {"schema_hint": schema_hint, "temperature": temperature, "max_tokens": max_tokens}

        if not wants_json:
            payload = self.build_payload(messages, **params)
            response, data = await self._attempt(payload, cancel_event)
            if not response.is_success:
                raise self._failure(response.status_code, data, json_required=False)
            return self._success(response, data, payload, None)

        payload = self.build_payload(messages, json_format="json_object", **params)
        response, data = await self._attempt(payload, cancel_event)
        if response.is_success:
            return self._success(response, data, payload, "json_object")

        first_kind = classify_server_error(data, response.status_code)
        if first_kind.is_json_rejection and schema_hint is not None:
            logger.info(
                f"{self.binding.model_id}: json_object rejected ({first_kind.value}), retrying with json_schema"
            )
            payload = self.build_payload(messages, json_format="json_schema", **params)
            response, data = await self._attempt(payload, cancel_event)
            if response.is_success:
                return self._success(response, data, payload, "json_schema")

        raise self._failure(response.status_code, data, json_required=True, first_kind=first_kind)

    def _failure(
        self,
        status: int,
        data: Any,
        *,
        json_required: bool,
        first_kind: ServerErrorKind = ServerErrorKind.OTHER,
    ) -> ClientError:
        message = error_text(data)
        kind = classify_server_error(data, status)
        if kind is ServerErrorKind.MODEL_LOAD:
            logger.error(f"Model load error from {self.binding.base_url}: {status} {message}")
            return ModelLoadError(f"Model loading failed: {status} - {message}", status=status, body=data)
        if json_required and (kind.is_json_rejection or first_kind.is_json_rejection):
            logger.error(f"JSON mode rejected by {self.binding.base_url}: {status} {message}")
            return JsonModeUnsupported(
                f"JSON mode required but not supported: {status} - {message}", status=status, body=data
            )
        return CompletionError(f"Chat completion failed: {status} - {message}", status=status, body=data)

    async def list_models(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/v1/models")
        if not response.is_success:
            raise ConnectivityError(
                f"Failed to fetch models: HTTP {response.status_code}",
                status=response.status_code,
                body=_decode_body(response),
            )
        data = _decode_body(response)
        if not isinstance(data, dict):
            return []
        return [m for m in data.get("data") or [] if isinstance(m, dict)]
