"""
Line-based text chunking for long captions/transcripts.
Chunks only when the estimated token cost exceeds the single-call threshold.
"""

import math
import logging

from clipnotes.core.constants import (
    CHARS_PER_TOKEN, SINGLE_CALL_TOKEN_LIMIT, PART_TOKEN_LIMIT,
)

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token cost: one token per CHARS_PER_TOKEN characters."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def needs_chunking(text: str, threshold: int = SINGLE_CALL_TOKEN_LIMIT) -> bool:
    """Check if text is too large for one summarization call."""
    return estimate_tokens(text) > threshold


def split_by_lines(text: str, ceiling: int = PART_TOKEN_LIMIT) -> list[str]:
    """
    Split text into ordered parts of at most `ceiling` estimated tokens.

    Lines are never cut in half. A single line that is larger than the
    ceiling on its own becomes its own part. Joining the parts with "\\n"
    gives back the original text.
    """
    if not text:
        return []

    parts = []
    current: list[str] = []
    current_tokens = 0

    for line in text.split('\n'):
        # +1 for the newline that joins it to the previous line
        line_tokens = estimate_tokens(line + '\n')
        if current and current_tokens + line_tokens > ceiling:
            parts.append('\n'.join(current))
            current = []
            current_tokens = 0
        current.append(line)
        current_tokens += line_tokens

    if current:
        parts.append('\n'.join(current))

    logger.debug("Split %d chars into %d parts (ceiling=%d tokens)",
                 len(text), len(parts), ceiling)
    return parts


def split_in_half(text: str) -> list[str]:
    """
    Split one part into two along the line nearest its middle.
    Returns [text] when it has a single line.
    """
    lines = text.split('\n')
    if len(lines) < 2:
        return [text]
    target = len(text) / 2
    best_idx = 1
    best_gap = None
    offset = 0
    for idx in range(1, len(lines)):
        offset += len(lines[idx - 1]) + 1
        gap = abs(offset - target)
        if best_gap is None or gap < best_gap:
            best_idx, best_gap = idx, gap
    return ['\n'.join(lines[:best_idx]), '\n'.join(lines[best_idx:])]
