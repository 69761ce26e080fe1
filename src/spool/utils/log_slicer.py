"""Chunked log emission for long streamed text.

Log aggregators truncate or wrap long lines unpredictably, so forwarded
model output is logged as numbered slices that break on word boundaries.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_SLICE_WIDTH = 150


def slice_text(text: str, width: int = DEFAULT_SLICE_WIDTH) -> list[str]:
    """Split text into pieces of at most ``width`` characters.

    Each cut lands on the last space inside the window (the space itself
    is dropped). A window with no space is cut hard at ``width``.
    """
    if not text or not isinstance(text, str):
        return []
    width = max(1, width)
    pieces: list[str] = []
    remaining = text
    while len(remaining) > width:
        window = remaining[:width]
        last_space = window.rfind(" ")
        if last_space != -1:
            pieces.append(remaining[:last_space])
            remaining = remaining[last_space + 1:]
        else:
            pieces.append(window)
            remaining = remaining[width:]
    if remaining:
        pieces.append(remaining)
    return pieces


def log_slices(
    text: str,
    *,
    log: logging.Logger | None = None,
    level: int = logging.DEBUG,
    width: int = DEFAULT_SLICE_WIDTH,
) -> list[str]:
    """Log ``text`` as ``msg N: ...`` lines and return the emitted lines.

    Nothing is computed when ``level`` is disabled on the target logger.
    """
    target = log or logger
    if not target.isEnabledFor(level):
        return []
    lines = [f"msg {n}: {piece}" for n, piece in enumerate(slice_text(text, width), 1)]
    for line in lines:
        target.log(level, "%s", line)
    return lines
