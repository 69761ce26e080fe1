"""Tests for the Anthropic streaming provider."""

from __future__ import annotations

import json

import httpx
import pytest

from spool.config import ModelConfig
from spool.models.anthropic_provider import AnthropicProvider
from spool.models.base import (
    ChatMessage,
    CompletionOptions,
    ModelConnectionError,
    ToolCall,
    message_text,
)


def _sse(*events: dict) -> bytes:
    return "".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events
    ).encode()


def _text_delta(text: str) -> dict:
    return {
        "type": "content_block_delta",
        "index": 0,
        "delta": {"type": "text_delta", "text": text},
    }


def _stop(reason: str) -> dict:
    return {"type": "message_delta", "delta": {"stop_reason": reason}, "usage": {}}


def _provider(handler) -> AnthropicProvider:
    return AnthropicProvider(
        ModelConfig(provider="anthropic", model="claude-test", api_key="test-key"),
        provider_name="claude",
        transport=httpx.MockTransport(handler),
    )


async def _collect(provider, messages, options) -> list[ChatMessage]:
    return [m async for m in provider.stream_chat(messages, options)]


class TestMessageConversion:
    def test_system_message_extraction(self):
        system, msgs = AnthropicProvider._convert_messages([
            ChatMessage(role="system", content="You are helpful."),
            ChatMessage(role="user", content="Hello"),
        ])
        assert system == "You are helpful."
        assert msgs == [{"role": "user", "content": "Hello"}]

    def test_consecutive_roles_are_merged(self):
        system, msgs = AnthropicProvider._convert_messages([
            ChatMessage(role="user", content="Earlier turns:\nU: hi"),
            ChatMessage(role="user", content="now"),
            ChatMessage(role="tool", content="result"),
            ChatMessage.assistant_text("answer"),
        ])
        assert system is None
        assert msgs == [
            {"role": "user", "content": "Earlier turns:\nU: hi\n\nnow\n\nresult"},
            {"role": "assistant", "content": "answer"},
        ]

    def test_tool_calls_and_results_become_content_blocks(self):
        _, msgs = AnthropicProvider._convert_messages([
            ChatMessage(role="user", content="look it up"),
            ChatMessage.assistant_text(
                "checking",
                tool_calls=(ToolCall(id="tu_1", name="search", arguments={"q": "x"}),),
            ),
            ChatMessage(role="tool", content="result one", tool_call_id="tu_1"),
            ChatMessage(role="user", content="and?"),
        ])

        assert msgs == [
            {"role": "user", "content": "look it up"},
            {"role": "assistant", "content": [
                {"type": "text", "text": "checking"},
                {"type": "tool_use", "id": "tu_1", "name": "search", "input": {"q": "x"}},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "tu_1", "content": "result one"},
                {"type": "text", "text": "and?"},
            ]},
        ]


class TestStreamChat:
    async def test_streams_text_and_stop_reason(self):
        bodies: list[dict] = []

        def handler(request):
            bodies.append(json.loads(request.content))
            assert request.headers["x-api-key"] == "test-key"
            return httpx.Response(200, content=_sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 3}}},
                _text_delta("Hi "),
                _text_delta("there"),
                _stop("end_turn"),
                {"type": "message_stop"},
            ))

        provider = _provider(handler)
        out = await _collect(
            provider,
            [ChatMessage(role="system", content="sys"), ChatMessage(role="user", content="q")],
            CompletionOptions(max_tokens=64),
        )
        await provider.aclose()

        assert [message_text(m) for m in out] == ["Hi ", "there", ""]
        assert out[-1].finish_reason == "end_turn"
        assert out[-1].truncated is False
        assert bodies[0]["system"] == "sys"
        assert bodies[0]["max_tokens"] == 64

    async def test_max_tokens_stop_reason_marks_truncation(self):
        def handler(request):
            return httpx.Response(200, content=_sse(_text_delta("cut"), _stop("max_tokens")))

        provider = _provider(handler)
        out = await _collect(provider, [ChatMessage(role="user", content="q")], CompletionOptions())
        await provider.aclose()

        assert out[-1].truncated is True
        assert out[-1].is_assistant

    async def test_rate_limit_error(self):
        def handler(request):
            return httpx.Response(429, content=b"slow down")

        provider = _provider(handler)
        with pytest.raises(ModelConnectionError, match="rate limit exceeded: slow down"):
            await _collect(provider, [ChatMessage(role="user", content="q")], CompletionOptions())
        await provider.aclose()

    async def test_stream_error_event(self):
        def handler(request):
            return httpx.Response(200, content=_sse(
                {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            ))

        provider = _provider(handler)
        with pytest.raises(ModelConnectionError, match="Overloaded"):
            await _collect(provider, [ChatMessage(role="user", content="q")], CompletionOptions())
        await provider.aclose()

    async def test_tool_use_blocks_are_collected(self):
        def handler(request):
            return httpx.Response(200, content=_sse(
                _text_delta("Let me check."),
                {
                    "type": "content_block_start",
                    "index": 1,
                    "content_block": {"type": "tool_use", "id": "tu_1", "name": "search"},
                },
                {
                    "type": "content_block_delta",
                    "index": 1,
                    "delta": {"type": "input_json_delta", "partial_json": "{\"q\": "},
                },
                {
                    "type": "content_block_delta",
                    "index": 1,
                    "delta": {"type": "input_json_delta", "partial_json": "\"spool\"}"},
                },
                {"type": "content_block_stop", "index": 1},
                _stop("tool_use"),
            ))

        provider = _provider(handler)
        out = await _collect(
            provider,
            [ChatMessage(role="user", content="q")],
            CompletionOptions(tools=({"name": "search"},)),
        )
        await provider.aclose()

        assert message_text(out[0]) == "Let me check."
        assert out[-1].finish_reason == "tool_use"
        assert out[-1].truncated is False
        assert out[-1].tool_calls == (
            ToolCall(id="tu_1", name="search", arguments={"q": "spool"}),
        )

    async def test_default_max_tokens_comes_from_config(self):
        provider = _provider(lambda request: httpx.Response(200))
        assert provider.default_max_tokens == 4096
        await provider.aclose()
