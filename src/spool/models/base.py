"""Abstract model interface.

All model providers implement one streaming capability, ``stream_chat``,
so higher layers can drive any backend without knowing which one it is.
Messages and options are immutable value types; every layer builds new
ones instead of editing what it was given.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from spool.exceptions import ModelError

TextPart = Mapping[str, Any]
MessageContent = Union[str, Sequence[TextPart], Mapping[str, Any]]


@dataclass(frozen=True)
class ToolCall:
    """A parsed tool call from a model response."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


def parse_tool_arguments(raw: str) -> dict:
    """Decode streamed tool-call arguments; malformed JSON becomes ``{}``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True)
class ChatMessage:
    """A role-tagged unit of conversation.

    ``content`` is either plain text, an ordered sequence of typed parts
    (``{"type": "text", "text": ...}``), or a mapping carrying a ``text``
    field. ``truncated`` and ``finish_reason`` are only meaningful on
    assistant messages. Assistant messages may carry ``tool_calls``; a
    ``tool`` message answering one sets ``tool_call_id``.
    """

    role: str
    content: MessageContent = ""
    truncated: bool = False
    finish_reason: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    @classmethod
    def assistant_text(
        cls,
        text: str,
        *,
        finish_reason: str | None = None,
        truncated: bool = False,
        tool_calls: Sequence[ToolCall] = (),
    ) -> ChatMessage:
        """Build an assistant message holding a single text part."""
        return cls(
            role="assistant",
            content=({"type": "text", "text": text},),
            truncated=truncated,
            finish_reason=finish_reason,
            tool_calls=tuple(tool_calls),
        )

    @property
    def is_assistant(self) -> bool:
        return self.role == "assistant"


@dataclass(frozen=True)
class CompletionOptions:
    """Per-request completion options.

    ``extra`` carries provider-specific passthrough fields that the
    streaming controller never interprets.
    """

    max_tokens: int | None = None
    model: str = ""
    temperature: float | None = None
    tools: tuple[dict, ...] | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def tool_mode(self) -> bool:
        return bool(self.tools)


def message_text(message: ChatMessage) -> str:
    """Return the plain text carried by a message.

    String content is returned as-is, part sequences contribute their
    ``text``-typed parts joined by spaces, and a bare mapping falls back to
    its ``text`` field.
    """
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        text = content.get("text")
        return text if isinstance(text, str) else ""
    if isinstance(content, Sequence):
        return " ".join(
            str(part.get("text", ""))
            for part in content
            if isinstance(part, Mapping) and part.get("type") == "text"
        )
    return ""


StreamFn = Callable[[list[ChatMessage], CompletionOptions], AsyncIterator[ChatMessage]]


class CancellationSignal(Protocol):
    """Cooperative cancellation flag. ``asyncio.Event`` satisfies it."""

    def is_set(self) -> bool: ...


class ModelProvider(ABC):
    """Abstract base class for all streaming model providers."""

    @abstractmethod
    def stream_chat(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> AsyncIterator[ChatMessage]:
        """Stream a chat completion, yielding messages as they arrive.

        Implementations mark the final assistant message ``truncated`` when
        the backend stopped because the output-token budget ran out.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...

    @property
    def system_message_supported(self) -> bool:
        """Whether the endpoint accepts a leading system message."""
        return True

    @property
    def default_max_tokens(self) -> int | None:
        """Output budget sent when a request leaves ``max_tokens`` unset."""
        return None

    async def aclose(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None


class ModelConnectionError(ModelError):
    """Raised when a model API call fails due to network or server issues.

    Wraps the underlying httpx/transport error with a user-friendly
    message and preserves the original exception for debugging.
    """

    def __init__(self, message: str, original: Exception | None = None):
        super().__init__(message)
        self.original = original
