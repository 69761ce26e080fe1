"""Transport-level retry for stream functions.

Truncation recovery lives in the adaptive controller. This module handles
the other kind of failure: a stream that errors out (connection refused,
HTTP 5xx, timeout) before it produced anything.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from spool.config import StreamSettings
from spool.models.base import (
    ChatMessage,
    CompletionOptions,
    ModelConnectionError,
    StreamFn,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRetryPolicy:
    """Retry policy for stream setup failures."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_seconds: float = 0.25

    @classmethod
    def from_stream_settings(cls, settings: StreamSettings) -> ModelRetryPolicy:
        max_attempts = max(1, min(10, settings.transport_retry_attempts))
        base_delay = max(0.0, settings.transport_retry_base_delay_seconds)
        max_delay = max(base_delay, settings.transport_retry_max_delay_seconds)
        jitter = max(0.0, settings.transport_retry_jitter_seconds)
        return cls(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay,
            max_delay_seconds=max_delay,
            jitter_seconds=jitter,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** (attempt - 1)),
        )
        if self.jitter_seconds > 0:
            delay += random.uniform(0.0, self.jitter_seconds)
        return delay


def is_retryable_model_error(error: BaseException) -> bool:
    """Return True when a stream failure is likely transient."""
    if isinstance(error, ModelConnectionError):
        return True
    if isinstance(error, (asyncio.CancelledError, KeyboardInterrupt, SystemExit)):
        return False

    text = str(error or "").strip().lower()
    if not text:
        return False

    retry_markers = (
        "connection",
        "connect",
        "timeout",
        "timed out",
        "rate limit",
        "too many requests",
        "temporar",
        "unavailable",
    )
    return any(marker in text for marker in retry_markers)


def retrying_stream_fn(
    stream_fn: StreamFn,
    policy: ModelRetryPolicy,
    *,
    should_retry: Callable[[BaseException], bool] | None = None,
) -> StreamFn:
    """Wrap ``stream_fn`` so failures before the first message are retried.

    Once a message has been yielded a retry would duplicate visible
    output, so later failures propagate unchanged.
    """
    decider = should_retry or is_retryable_model_error

    async def _stream(
        messages: list[ChatMessage], options: CompletionOptions,
    ) -> AsyncIterator[ChatMessage]:
        for attempt in range(1, policy.max_attempts + 1):
            yielded = False
            stream = stream_fn(messages, options)
            try:
                async for message in stream:
                    yielded = True
                    yield message
                return
            except Exception as error:
                remaining = policy.max_attempts - attempt
                if yielded or remaining <= 0 or not decider(error):
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Stream attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt,
                    policy.max_attempts,
                    error,
                    delay,
                )
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            # Back off only once the failed stream is closed.
            if delay > 0:
                await asyncio.sleep(delay)

    return _stream
