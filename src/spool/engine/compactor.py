"""One-shot conversation compaction.

Collapses the older part of a conversation into a single synthetic user
message so a retried request carries fewer input tokens. The most recent
``retain_last`` messages are always kept verbatim, and a leading system
message is held aside and restored in front of the summary.
"""

from __future__ import annotations

import re

from spool.models.base import ChatMessage, message_text

SNIPPET_CHARS = 220

_ROLE_TAGS = {
    "user": "U:",
    "assistant": "A:",
    "tool": "T:",
}
_OTHER_TAG = "O:"
_WHITESPACE_RE = re.compile(r"\s+")


def _summary_line(message: ChatMessage) -> str:
    text = _WHITESPACE_RE.sub(" ", message_text(message)).strip()
    if not text:
        return ""
    tag = _ROLE_TAGS.get(message.role, _OTHER_TAG)
    return f"{tag} {text[:SNIPPET_CHARS]}"


def compact_conversation(
    messages: list[ChatMessage],
    retain_last: int,
    char_budget: int,
    legend_header: str,
    keep_system_message: bool = True,
) -> list[ChatMessage]:
    """Summarize all but the last ``retain_last`` messages.

    Returns ``messages`` itself (same object) when there is nothing worth
    summarizing, so callers can detect a no-op by identity. Otherwise the
    result is ``[system?, summary, *tail]`` and never longer than
    ``retain_last + 2`` messages.
    """
    if len(messages) <= retain_last + 1:
        return messages

    system = messages[0] if messages and messages[0].role == "system" else None
    start = 1 if system is not None else 0
    split = len(messages) - retain_last
    head = messages[start:split]
    tail = messages[split:]
    if not head:
        return messages

    used = 0
    lines: list[str] = []
    for message in head:
        line = _summary_line(message)
        if not line:
            continue
        # Joining newlines count against the budget too.
        cost = len(line) + (1 if lines else 0)
        if used + cost > char_budget:
            break
        used += cost
        lines.append(line)

    if not lines:
        return messages

    summary = ChatMessage(role="user", content=legend_header + "\n" + "\n".join(lines))
    compacted: list[ChatMessage] = []
    if system is not None and keep_system_message:
        compacted.append(system)
    compacted.append(summary)
    compacted.extend(tail)
    return compacted
