"""Shared request diagnostics for streaming attempts.

Computes cheap, consistent size metrics for outbound chat requests so
providers can log payload growth (and the effect of compaction) before
dispatch.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from spool.models.base import ChatMessage, message_text

_OVERSIZE_REQUEST_BYTES = 3_500_000
_LARGE_REQUEST_BYTES = 1_000_000
_ROLES = ("user", "assistant", "system", "tool")


def estimate_tokens(text: str) -> int:
    """Estimate token count (~4 chars/token). Always returns >= 1."""
    if not text:
        return 1
    return max(1, len(text) // 4)


def _safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


@dataclass(frozen=True)
class RequestDiagnostics:
    """Compact request metrics for logging."""

    request_bytes: int
    request_est_tokens: int
    message_count: int
    largest_message_chars: int
    role_chars: dict[str, int]
    max_tokens: int | None

    @property
    def is_large(self) -> bool:
        return self.request_bytes >= _LARGE_REQUEST_BYTES

    @property
    def is_oversize_risk(self) -> bool:
        return self.request_bytes >= _OVERSIZE_REQUEST_BYTES

    @property
    def size_tier(self) -> str:
        if self.is_oversize_risk:
            return "oversize_risk"
        return "large" if self.is_large else "normal"


def collect_request_diagnostics(
    *,
    messages: list[ChatMessage],
    payload: Any,
    max_tokens: int | None = None,
) -> RequestDiagnostics:
    """Compute request diagnostics from a chat request and its wire payload."""
    role_chars = {role: 0 for role in _ROLES}
    role_chars["other"] = 0
    largest = 0
    for message in messages:
        size = len(message_text(message))
        largest = max(largest, size)
        key = message.role if message.role in role_chars else "other"
        role_chars[key] += size

    payload_json = _safe_json_dumps(payload)
    return RequestDiagnostics(
        request_bytes=len(payload_json.encode("utf-8", errors="replace")),
        request_est_tokens=estimate_tokens(payload_json),
        message_count=len(messages),
        largest_message_chars=largest,
        role_chars=role_chars,
        max_tokens=max_tokens,
    )


def log_request_diagnostics(
    *,
    logger: logging.Logger,
    provider_name: str,
    model_name: str,
    diagnostics: RequestDiagnostics,
) -> None:
    """Emit a one-line structured log for an outbound chat request."""
    if diagnostics.is_oversize_risk:
        level = logging.WARNING
    elif diagnostics.is_large:
        level = logging.INFO
    else:
        level = logging.DEBUG

    chars = diagnostics.role_chars
    logger.log(
        level,
        (
            "llm_request provider=%s model=%s max_tokens=%s "
            "request_bytes=%d request_est_tokens=%d messages=%d "
            "largest_message_chars=%d size=%s "
            "role_chars={user:%d,assistant:%d,system:%d,tool:%d,other:%d}"
        ),
        provider_name,
        model_name,
        diagnostics.max_tokens,
        diagnostics.request_bytes,
        diagnostics.request_est_tokens,
        diagnostics.message_count,
        diagnostics.largest_message_chars,
        diagnostics.size_tier,
        chars["user"],
        chars["assistant"],
        chars["system"],
        chars["tool"],
        chars["other"],
    )
