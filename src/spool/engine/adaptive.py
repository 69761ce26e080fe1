"""Adaptive streaming with truncation recovery.

Drives one logical completion over an injected stream function. When the
backend reports that an assistant response was cut off by the output-token
budget, the controller retries with a doubled budget (clamped to a
ceiling), compacts the conversation once, and may grant one extra attempt
at a time when the last allowed attempt is still truncated.

Messages from an attempt are forwarded in the order they arrive until that
attempt is flagged truncated; from then on the attempt's output is held
back because a retry will replace it. With auto-expansion disabled the
truncation flag is observed only, and everything is forwarded.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from spool.config import DEFAULT_LEGEND_HEADER, ConfigError
from spool.engine.compactor import compact_conversation
from spool.models.base import (
    CancellationSignal,
    ChatMessage,
    CompletionOptions,
    StreamFn,
    message_text,
)
from spool.utils.log_slicer import DEFAULT_SLICE_WIDTH, log_slices

logger = logging.getLogger(__name__)


class DiagnosticTag:
    """Finish-reason tags carried by synthetic status messages."""

    ATTEMPTS_EXTENDED = "Extending_MAX_TOKEN_RETRIES"
    CONVERSATION_COMPACTED = "CONVERSATION_COMPACTED"
    RETRYING_EXPANSION = "RETRYING_MAX_TOKENS_EXPANSION"
    EXPANSION_BLOCKED = "MAX_TOKEN_EXPANSION_BLOCKED"

    ALL = frozenset({
        ATTEMPTS_EXTENDED,
        CONVERSATION_COMPACTED,
        RETRYING_EXPANSION,
        EXPANSION_BLOCKED,
    })


def is_diagnostic(message: ChatMessage) -> bool:
    """True when ``message`` was synthesized by the controller."""
    return message.is_assistant and message.finish_reason in DiagnosticTag.ALL


@dataclass(frozen=True)
class AdaptiveRetryConfig:
    """Resilience settings for a single controller run."""

    auto_expand: bool = True
    baseline_max_tokens: int | None = None
    attempts_limit: int = 1
    max_tokens_ceiling: int | None = None
    retain_last: int = 8
    summary_char_budget: int = 4000
    legend_header: str = DEFAULT_LEGEND_HEADER
    allow_attempt_extension: bool = False
    emit_diagnostics: bool = False
    keep_system_message: bool = True
    log_slice_width: int = DEFAULT_SLICE_WIDTH

    def __post_init__(self) -> None:
        if self.attempts_limit < 1:
            raise ConfigError(f"attempts_limit must be >= 1, got {self.attempts_limit}")
        if self.retain_last < 0:
            raise ConfigError(f"retain_last must be >= 0, got {self.retain_last}")
        if self.summary_char_budget < 0:
            raise ConfigError(
                f"summary_char_budget must be >= 0, got {self.summary_char_budget}"
            )


@dataclass
class _RunState:
    """Mutable state owned by exactly one controller run."""

    messages: list[ChatMessage]
    attempts_limit: int
    ceiling: int | None
    max_tokens: int | None
    attempt: int = 0
    compacted: bool = False
    expanded: bool = False

    def attempt_options(self, options: CompletionOptions) -> CompletionOptions:
        if not self.expanded or not self.max_tokens:
            return options
        budget = self.max_tokens
        if self.ceiling is not None:
            budget = min(budget, self.ceiling)
        return dataclasses.replace(options, max_tokens=budget)


async def _close_stream(stream: AsyncIterator[ChatMessage]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


async def adaptive_stream(
    messages: list[ChatMessage],
    signal: CancellationSignal,
    options: CompletionOptions,
    stream_fn: StreamFn,
    config: AdaptiveRetryConfig,
) -> AsyncIterator[ChatMessage]:
    """Stream a completion, retrying truncated attempts with larger budgets.

    Yields model messages and, when ``config.emit_diagnostics`` is set,
    synthetic assistant status messages tagged with a ``DiagnosticTag``.
    Errors raised by ``stream_fn`` propagate unchanged. A set ``signal``
    ends the run silently.
    """
    state = _RunState(
        messages=messages,
        attempts_limit=config.attempts_limit,
        ceiling=config.max_tokens_ceiling,
        max_tokens=options.max_tokens,
    )

    while True:
        if signal.is_set():
            logger.debug("Run cancelled before attempt %d", state.attempt + 1)
            return
        state.attempt += 1
        attempt_options = state.attempt_options(options)
        logger.info(
            "Stream attempt %d/%d (max_tokens=%s, messages=%d)",
            state.attempt,
            state.attempts_limit,
            attempt_options.max_tokens,
            len(state.messages),
        )

        truncated = False
        stream = stream_fn(state.messages, attempt_options)
        try:
            async for message in stream:
                if signal.is_set():
                    logger.debug("Run cancelled during attempt %d", state.attempt)
                    return
                if message.is_assistant and message.truncated:
                    truncated = True
                if config.auto_expand and truncated:
                    continue
                log_slices(
                    message_text(message), log=logger, width=config.log_slice_width,
                )
                yield message
        finally:
            await _close_stream(stream)

        if not (config.auto_expand and truncated):
            return
        if signal.is_set():
            logger.debug("Run cancelled after attempt %d", state.attempt)
            return

        logger.info("Truncation detected on attempt %d", state.attempt)
        if (
            state.attempt == state.attempts_limit
            and config.allow_attempt_extension
        ):
            state.attempts_limit += 1
            logger.info("Extending retry allowance to %d attempts", state.attempts_limit)
            if config.emit_diagnostics:
                yield ChatMessage.assistant_text(
                    f" Truncation detected on attempt {state.attempt}. "
                    f"Extending retry allowance to {state.attempts_limit} attempts.",
                    finish_reason=DiagnosticTag.ATTEMPTS_EXTENDED,
                )

        if state.attempt >= state.attempts_limit:
            logger.warning(
                "Giving up after %d truncated attempts", state.attempt,
            )
            return

        if not state.compacted:
            compacted = compact_conversation(
                state.messages,
                config.retain_last,
                config.summary_char_budget,
                config.legend_header,
                keep_system_message=config.keep_system_message,
            )
            if compacted is not state.messages:
                logger.info(
                    "Compacted conversation from %d to %d messages",
                    len(state.messages),
                    len(compacted),
                )
                state.messages = compacted
                state.compacted = True
                if config.emit_diagnostics:
                    yield ChatMessage.assistant_text(
                        "Conversation compacted to reduce prompt token usage before retry.",
                        finish_reason=DiagnosticTag.CONVERSATION_COMPACTED,
                    )

        current = state.max_tokens or config.baseline_max_tokens
        if not current:
            logger.warning(
                "Truncation detected but no max_tokens budget is known; not expanding",
            )
            if config.emit_diagnostics:
                yield ChatMessage.assistant_text(
                    "Truncation detected but maxTokens cannot grow (no budget set). "
                    "Proceeding without further expansion.",
                    finish_reason=DiagnosticTag.EXPANSION_BLOCKED,
                )
            return

        if not state.ceiling:
            state.ceiling = current * 4
        proposed = min(current * 2, state.ceiling)
        if proposed > current:
            state.max_tokens = proposed
            state.expanded = True
            logger.info(
                "Retrying with max_tokens=%d (was %d, ceiling %d)",
                proposed,
                current,
                state.ceiling,
            )
            if config.emit_diagnostics:
                yield ChatMessage.assistant_text(
                    f"Partial response truncated at {current} tokens. "
                    f"Retrying with maxTokens={proposed} "
                    f"(attempt {state.attempt + 1}/{state.attempts_limit}).",
                    finish_reason=DiagnosticTag.RETRYING_EXPANSION,
                )
            continue

        logger.warning(
            "max_tokens cannot grow past %d (ceiling %d); stopping", current, state.ceiling,
        )
        if config.emit_diagnostics:
            yield ChatMessage.assistant_text(
                f"Truncation detected but maxTokens cannot grow "
                f"(current={current}, ceiling={state.ceiling}). "
                "Proceeding without further expansion.",
                finish_reason=DiagnosticTag.EXPANSION_BLOCKED,
            )
        return
