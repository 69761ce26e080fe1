"""Spool: adaptive streaming completions for LLM backends."""

from __future__ import annotations

__version__ = "0.1.0"

from spool.engine.adaptive import (  # noqa: E402
    AdaptiveRetryConfig,
    DiagnosticTag,
    adaptive_stream,
    is_diagnostic,
)
from spool.engine.chat import stream_chat  # noqa: E402
from spool.engine.compactor import compact_conversation  # noqa: E402
from spool.models.base import (  # noqa: E402
    ChatMessage,
    CompletionOptions,
    ModelProvider,
    StreamFn,
    ToolCall,
)

__all__ = [
    "AdaptiveRetryConfig",
    "ChatMessage",
    "CompletionOptions",
    "DiagnosticTag",
    "ModelProvider",
    "StreamFn",
    "ToolCall",
    "__version__",
    "adaptive_stream",
    "compact_conversation",
    "is_diagnostic",
    "stream_chat",
]
