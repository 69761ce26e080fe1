"""Chat entry point that puts a provider behind the adaptive controller.

Resolves per-request resilience settings the same way for every backend:
tool-calling requests get the full ceiling in one attempt (a retried tool
call cannot be spliced), plain chat gets truncation recovery.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator

from spool.config import StreamSettings
from spool.engine.adaptive import AdaptiveRetryConfig, adaptive_stream
from spool.models.base import (
    CancellationSignal,
    ChatMessage,
    CompletionOptions,
    ModelProvider,
    StreamFn,
)
from spool.models.retry import ModelRetryPolicy, retrying_stream_fn

logger = logging.getLogger(__name__)


def resolve_request(
    options: CompletionOptions,
    settings: StreamSettings,
    *,
    keep_system_message: bool = True,
    auto_expand: bool | None = None,
    max_attempts: int | None = None,
    provide_completed_msg: bool | None = None,
    log_slice_width: int | None = None,
) -> tuple[CompletionOptions, AdaptiveRetryConfig]:
    """Return the effective options and controller config for one request.

    Keyword overrides win over ``settings``; ``None`` means "use the
    configured default".
    """
    ceiling = settings.max_tokens_ceiling
    if options.tool_mode:
        options = dataclasses.replace(options, max_tokens=ceiling)
        enable_auto = False
        attempts = 1
    else:
        enable_auto = settings.auto_expand if auto_expand is None else auto_expand
        requested = settings.max_attempts if max_attempts is None else max_attempts
        attempts = max(1, requested) if enable_auto else 1

    completed = (
        settings.provide_completed_msg
        if provide_completed_msg is None
        else provide_completed_msg
    )
    config = AdaptiveRetryConfig(
        auto_expand=enable_auto,
        baseline_max_tokens=options.max_tokens,
        attempts_limit=attempts,
        max_tokens_ceiling=ceiling,
        retain_last=settings.retain_last,
        summary_char_budget=settings.summary_char_budget,
        legend_header=settings.legend_header,
        allow_attempt_extension=settings.allow_attempt_extension,
        emit_diagnostics=not completed,
        keep_system_message=keep_system_message,
        log_slice_width=(
            settings.log_slice_width if log_slice_width is None else log_slice_width
        ),
    )
    return options, config


async def stream_chat(
    provider: ModelProvider | StreamFn,
    messages: list[ChatMessage],
    signal: CancellationSignal,
    options: CompletionOptions,
    settings: StreamSettings | None = None,
    **overrides,
) -> AsyncIterator[ChatMessage]:
    """Stream a chat completion with truncation recovery.

    ``provider`` may be a ``ModelProvider`` or a bare stream function.
    A provider's configured ``default_max_tokens`` fills an unset
    ``options.max_tokens`` so truncation recovery has a budget to grow.
    Extra keyword arguments are passed to :func:`resolve_request`.
    """
    settings = settings or StreamSettings()
    if isinstance(provider, ModelProvider):
        stream_fn: StreamFn = provider.stream_chat
        if options.max_tokens is None and provider.default_max_tokens:
            options = dataclasses.replace(
                options, max_tokens=provider.default_max_tokens,
            )
        overrides.setdefault("keep_system_message", provider.system_message_supported)
        label = provider.name
    else:
        stream_fn = provider
        label = getattr(provider, "__name__", "stream_fn")

    options, config = resolve_request(options, settings, **overrides)
    if settings.transport_retry_attempts > 1:
        stream_fn = retrying_stream_fn(
            stream_fn, ModelRetryPolicy.from_stream_settings(settings),
        )

    logger.debug(
        "stream_chat provider=%s tool_mode=%s auto_expand=%s attempts=%d",
        label,
        options.tool_mode,
        config.auto_expand,
        config.attempts_limit,
    )
    run = adaptive_stream(messages, signal, options, stream_fn, config)
    try:
        async for message in run:
            yield message
    finally:
        await run.aclose()
