"""Anthropic Messages API streaming provider."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

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

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"


class AnthropicProvider(ModelProvider):
    """Model provider for the Anthropic Messages API (Claude).

    The system prompt travels in the top-level ``system`` field, so this
    endpoint always accepts one. A ``max_tokens`` stop reason marks the
    final streamed message as truncated.
    """

    def __init__(
        self,
        config: ModelConfig,
        provider_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperature = config.temperature
        self._name = provider_name or "anthropic"
        self._base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=120.0,
            headers={
                "x-api-key": config.api_key,
                "anthropic-version": API_VERSION,
                "content-type": "application/json",
            },
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return self._model

    @property
    def default_max_tokens(self) -> int:
        return self._max_tokens

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Conversions: Spool messages -> Anthropic format
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_messages(
        messages: list[ChatMessage],
    ) -> tuple[str | None, list[dict]]:
        """Split out the system prompt and merge turns so roles alternate.

        Tool and unknown roles are sent as user turns; consecutive turns
        with the same role are joined with a blank line, or concatenated
        as content blocks once a turn carries ``tool_use`` or
        ``tool_result`` blocks.
        """
        system_parts: list[str] = []
        converted: list[dict] = []
        for message in messages:
            text = message_text(message)
            if message.role == "system":
                if text:
                    system_parts.append(text)
                continue
            role = "assistant" if message.role == "assistant" else "user"
            content = _tool_blocks(message, text) or text
            if converted and converted[-1]["role"] == role:
                previous = converted[-1]["content"]
                if isinstance(previous, str) and isinstance(content, str):
                    converted[-1]["content"] = previous + "\n\n" + content
                else:
                    converted[-1]["content"] = _as_blocks(previous) + _as_blocks(content)
            else:
                converted.append({"role": role, "content": content})
        system_prompt = "\n\n".join(system_parts) if system_parts else None
        return system_prompt, converted

    def _build_body(
        self, messages: list[ChatMessage], options: CompletionOptions,
    ) -> dict[str, Any]:
        system_prompt, anthropic_msgs = self._convert_messages(messages)
        body: dict[str, Any] = {
            "model": options.model or self._model,
            "max_tokens": options.max_tokens or self._max_tokens,
            "messages": anthropic_msgs,
            "stream": True,
        }
        if system_prompt:
            body["system"] = system_prompt
        if options.tools:
            body["tools"] = list(options.tools)
        temp = options.temperature if options.temperature is not None else self._temperature
        if temp > 0:
            body["temperature"] = temp
        body.update(options.extra)
        return body

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> AsyncIterator[ChatMessage]:
        """Stream a completion from the Anthropic API."""
        body = self._build_body(messages, options)
        log_request_diagnostics(
            logger=logger,
            provider_name=self._name,
            model_name=body["model"],
            diagnostics=collect_request_diagnostics(
                messages=messages, payload=body, max_tokens=body["max_tokens"],
            ),
        )

        try:
            async with self._client.stream("POST", "/v1/messages", json=body) as response:
                if response.is_error:
                    status = response.status_code
                    body_text = (await response.aread()).decode(
                        "utf-8", errors="replace",
                    )[:200]
                    if status == 401:
                        msg = "Invalid Anthropic API key"
                    elif status == 429:
                        msg = "Anthropic rate limit exceeded"
                    else:
                        msg = f"Anthropic returned HTTP {status}"
                    raise ModelConnectionError(f"{msg}: {body_text}")

                # Tool input arrives as partial JSON between block start and stop.
                tool_calls: list[ToolCall] = []
                tool_id = ""
                tool_name = ""
                tool_json = ""

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data_str = line[6:]
                    if data_str.strip() == "[DONE]":
                        break
                    try:
                        event = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue

                    event_type = event.get("type", "")
                    if event_type == "content_block_start":
                        block = event.get("content_block", {})
                        if block.get("type") == "tool_use":
                            tool_id = block.get("id", "")
                            tool_name = block.get("name", "")
                            tool_json = ""
                    elif event_type == "content_block_delta":
                        delta = event.get("delta", {})
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield ChatMessage.assistant_text(delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            tool_json += delta.get("partial_json", "")
                    elif event_type == "content_block_stop":
                        if tool_name:
                            tool_calls.append(ToolCall(
                                id=tool_id,
                                name=tool_name,
                                arguments=parse_tool_arguments(tool_json),
                            ))
                            tool_id = tool_name = tool_json = ""
                    elif event_type == "message_delta":
                        stop_reason = event.get("delta", {}).get("stop_reason")
                        if stop_reason:
                            yield ChatMessage.assistant_text(
                                "",
                                finish_reason=stop_reason,
                                truncated=stop_reason == "max_tokens",
                                tool_calls=tool_calls,
                            )
                            tool_calls = []
                    elif event_type == "error":
                        error = event.get("error", {})
                        raise ModelConnectionError(
                            f"Anthropic stream error: {error.get('message', error)}",
                        )
        except httpx.ConnectError as e:
            raise ModelConnectionError(
                f"Cannot connect to Anthropic API at {self._base_url}: {e}",
                original=e,
            ) from e
        except httpx.TimeoutException as e:
            raise ModelConnectionError(
                f"Anthropic streaming timed out ({self._model}): {e}",
                original=e,
            ) from e
        except httpx.ReadError as e:
            raise ModelConnectionError(
                f"Anthropic stream interrupted ({self._model}): {e}",
                original=e,
            ) from e


def _tool_blocks(message: ChatMessage, text: str) -> list[dict] | None:
    """Anthropic content blocks for tool-call and tool-result messages."""
    if message.is_assistant and message.tool_calls:
        blocks = [{"type": "text", "text": text}] if text else []
        blocks.extend(
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": dict(call.arguments),
            }
            for call in message.tool_calls
        )
        return blocks
    if message.role == "tool" and message.tool_call_id:
        return [{
            "type": "tool_result",
            "tool_use_id": message.tool_call_id,
            "content": text,
        }]
    return None


def _as_blocks(content: str | list[dict]) -> list[dict]:
    if isinstance(content, list):
        return content
    return [{"type": "text", "text": content}] if content else []
