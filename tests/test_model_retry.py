"""Tests for transport-level stream retry."""

from __future__ import annotations

import asyncio

import pytest

from spool.config import StreamSettings
from spool.models.base import ChatMessage, ModelConnectionError, message_text
from spool.models.retry import (
    ModelRetryPolicy,
    is_retryable_model_error,
    retrying_stream_fn,
)

NO_DELAY = ModelRetryPolicy(
    max_attempts=5,
    base_delay_seconds=0.0,
    max_delay_seconds=0.0,
    jitter_seconds=0.0,
)


async def _texts(stream) -> list[str]:
    return [message_text(m) async for m in stream]


class TestRetryingStreamFn:
    async def test_retries_when_failure_happens_before_first_message(self):
        calls = {"count": 0}

        async def stream(messages, options):
            calls["count"] += 1
            if calls["count"] < 3:
                raise ModelConnectionError("stream setup failed")
            yield ChatMessage.assistant_text("alpha")
            yield ChatMessage.assistant_text("beta")

        wrapped = retrying_stream_fn(stream, NO_DELAY)

        assert await _texts(wrapped([], None)) == ["alpha", "beta"]
        assert calls["count"] == 3

    async def test_does_not_retry_after_partial_output(self):
        calls = {"count": 0}

        async def stream(messages, options):
            calls["count"] += 1
            yield ChatMessage.assistant_text("partial")
            raise ModelConnectionError("stream failed mid-response")

        seen: list[str] = []
        with pytest.raises(ModelConnectionError, match="mid-response"):
            async for message in retrying_stream_fn(stream, NO_DELAY)([], None):
                seen.append(message_text(message))

        assert seen == ["partial"]
        assert calls["count"] == 1

    async def test_exhausts_attempts_and_raises_last_error(self):
        calls = {"count": 0}

        async def stream(messages, options):
            calls["count"] += 1
            raise ModelConnectionError(f"failure {calls['count']}")
            yield  # pragma: no cover

        with pytest.raises(ModelConnectionError, match="failure 5"):
            await _texts(retrying_stream_fn(stream, NO_DELAY)([], None))

        assert calls["count"] == 5

    async def test_non_retryable_error_raises_immediately(self):
        calls = {"count": 0}

        async def stream(messages, options):
            calls["count"] += 1
            raise ValueError("bad request body")
            yield  # pragma: no cover

        with pytest.raises(ValueError):
            await _texts(retrying_stream_fn(stream, NO_DELAY)([], None))

        assert calls["count"] == 1

    async def test_custom_should_retry(self):
        calls = {"count": 0}

        async def stream(messages, options):
            calls["count"] += 1
            raise ModelConnectionError("nope")
            yield  # pragma: no cover

        wrapped = retrying_stream_fn(stream, NO_DELAY, should_retry=lambda _e: False)
        with pytest.raises(ModelConnectionError):
            await _texts(wrapped([], None))

        assert calls["count"] == 1

    async def test_failed_stream_is_closed_before_backoff(self, monkeypatch):
        events: list[str] = []

        class FailingStream:
            def __aiter__(self):
                return self

            async def __anext__(self):
                raise ModelConnectionError("connection refused")

            async def aclose(self):
                events.append("closed")

        async def recovered():
            yield ChatMessage.assistant_text("ok")

        streams = iter([FailingStream(), recovered()])

        async def fake_sleep(delay):
            events.append(f"sleep {delay}")

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        policy = ModelRetryPolicy(
            max_attempts=2,
            base_delay_seconds=0.25,
            max_delay_seconds=0.25,
            jitter_seconds=0.0,
        )
        wrapped = retrying_stream_fn(lambda messages, options: next(streams), policy)

        assert await _texts(wrapped([], None)) == ["ok"]
        assert events == ["closed", "sleep 0.25"]


class TestRetryPolicy:
    def test_from_stream_settings_clamps(self):
        policy = ModelRetryPolicy.from_stream_settings(StreamSettings(
            transport_retry_attempts=50,
            transport_retry_base_delay_seconds=2.0,
            transport_retry_max_delay_seconds=1.0,
            transport_retry_jitter_seconds=-1.0,
        ))
        assert policy.max_attempts == 10
        assert policy.max_delay_seconds == 2.0
        assert policy.jitter_seconds == 0.0

    def test_delay_is_exponential_and_capped(self):
        policy = ModelRetryPolicy(
            base_delay_seconds=0.5, max_delay_seconds=3.0, jitter_seconds=0.0,
        )
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]

    @pytest.mark.parametrize(("error", "expected"), [
        (ModelConnectionError("x"), True),
        (RuntimeError("Read timed out"), True),
        (RuntimeError("429 Too Many Requests"), True),
        (RuntimeError("invalid schema"), False),
        (RuntimeError(""), False),
        (asyncio.CancelledError(), False),
    ])
    def test_is_retryable(self, error, expected):
        assert is_retryable_model_error(error) is expected
