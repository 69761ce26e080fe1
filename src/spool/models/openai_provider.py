"""OpenAI-compatible streaming provider.

Connects to any OpenAI-compatible chat completions endpoint (vLLM,
LM Studio, llama.cpp server, hosted OpenAI) and streams the response via
SSE, one assistant message per text delta. Tool call deltas are assembled
and attached to the message that carries the finish reason.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from spool.config import ModelConfig
from spool.models.base import (
    ChatMessage,
    CompletionOptions,
    ModelConnectionError,
    ModelProvider,
    ToolCall,
    message_text,
    parse_tool_arguments,
)
from spool.models.request_diagnostics import (
    collect_request_diagnostics,
    log_request_diagnostics,
)

logger = logging.getLogger(__name__)

# finish_reason values that mean the output-token budget ran out.
_TRUNCATION_REASONS = frozenset({"length", "max_tokens"})


class OpenAICompatibleProvider(ModelProvider):
    """Provider for OpenAI-compatible API endpoints."""

    def __init__(
        self,
        config: ModelConfig,
        provider_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        headers: dict[str, str] = {}
        api_key = config.api_key.strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(300.0),
            headers=headers,
            transport=transport,
        )
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperature = config.temperature
        self._provider_name = provider_name or config.model

    @property
    def name(self) -> str:
        return self._provider_name

    @property
    def system_message_supported(self) -> bool:
        return self._config.system_message_supported

    @property
    def default_max_tokens(self) -> int:
        return self._max_tokens

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    async def _http_error_body(response: httpx.Response, limit: int = 200) -> str:
        """Safely extract an HTTP error body from a streaming response."""
        try:
            body = await response.aread()
        except httpx.HTTPError:
            return "<response body unavailable>"
        return body.decode("utf-8", errors="replace")[:limit]

    def _build_messages(self, messages: list[ChatMessage]) -> list[dict]:
        converted = []
        for message in messages:
            if message.role == "system" and not self.system_message_supported:
                continue
            out: dict = {"role": message.role, "content": message_text(message)}
            if message.tool_calls:
                out["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(dict(call.arguments)),
                        },
                    }
                    for call in message.tool_calls
                ]
            if message.tool_call_id:
                out["tool_call_id"] = message.tool_call_id
            converted.append(out)
        return converted

    @staticmethod
    def _assemble_tool_calls(buffers: dict[int, dict]) -> list[ToolCall]:
        calls = []
        for idx in sorted(buffers):
            buf = buffers[idx]
            calls.append(ToolCall(
                id=buf["id"].strip() or f"call_{idx}",
                name=buf["name"],
                arguments=parse_tool_arguments(buf["arguments"]),
            ))
        return calls

    def _build_payload(
        self, messages: list[ChatMessage], options: CompletionOptions,
    ) -> dict:
        payload: dict = {
            "model": options.model or self._model,
            "messages": self._build_messages(messages),
            "max_tokens": options.max_tokens or self._max_tokens,
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self._temperature
            ),
            "stream": True,
        }
        if options.tools:
            payload["tools"] = list(options.tools)
        payload.update(options.extra)
        return payload

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> AsyncIterator[ChatMessage]:
        """Stream a completion from an OpenAI-compatible endpoint via SSE."""
        payload = self._build_payload(messages, options)
        log_request_diagnostics(
            logger=logger,
            provider_name=self._provider_name,
            model_name=payload["model"],
            diagnostics=collect_request_diagnostics(
                messages=messages, payload=payload, max_tokens=payload["max_tokens"],
            ),
        )

        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=payload,
            ) as response:
                if response.is_error:
                    body_text = await self._http_error_body(response)
                    raise ModelConnectionError(
                        f"Model server returned HTTP {response.status_code}: {body_text}",
                    )

                # Tool call deltas are buffered by index until the choice finishes.
                tool_call_buffers: dict[int, dict] = {}

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data_str = line[len("data:"):].strip()
                    if data_str == "[DONE]":
                        if tool_call_buffers:
                            yield ChatMessage.assistant_text(
                                "",
                                tool_calls=self._assemble_tool_calls(tool_call_buffers),
                            )
                        return

                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE line: %s", data_str[:200])
                        continue

                    choices = data.get("choices") or [{}]
                    choice = choices[0]
                    delta = choice.get("delta") or {}
                    text = delta.get("content") or ""
                    finish_reason = choice.get("finish_reason")

                    for tc_delta in delta.get("tool_calls") or ():
                        idx = tc_delta.get("index", 0)
                        buf = tool_call_buffers.setdefault(
                            idx, {"id": "", "name": "", "arguments": ""},
                        )
                        if tc_delta.get("id"):
                            buf["id"] = tc_delta["id"]
                        func = tc_delta.get("function") or {}
                        if func.get("name"):
                            buf["name"] = func["name"]
                        if func.get("arguments"):
                            buf["arguments"] += func["arguments"]

                    if finish_reason:
                        tool_calls = self._assemble_tool_calls(tool_call_buffers)
                        tool_call_buffers.clear()
                        yield ChatMessage.assistant_text(
                            text,
                            finish_reason=finish_reason,
                            truncated=finish_reason in _TRUNCATION_REASONS,
                            tool_calls=tool_calls,
                        )
                    elif text:
                        yield ChatMessage.assistant_text(text)
        except httpx.ConnectError as e:
            raise ModelConnectionError(
                f"Cannot connect to model server at {self._client.base_url}: {e}",
                original=e,
            ) from e
        except httpx.TimeoutException as e:
            raise ModelConnectionError(
                f"Streaming request timed out ({self._model}): {e}",
                original=e,
            ) from e
        except httpx.ReadError as e:
            raise ModelConnectionError(
                f"Stream interrupted ({self._model}): {e}",
                original=e,
            ) from e
