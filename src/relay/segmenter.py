"""
Chunk segmentation for streamed generation output.

Cuts an accumulating text buffer into bounded chunks for speech synthesis,
preferring sentence/clause boundaries but never holding more than
`hard_limit` characters. Deciding which chunk is the final one of a reply
is left to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

SOFT_LIMIT = 80
HARD_LIMIT = 190
MIN_SPACE_CUT = 40

TERMINATORS = frozenset(".!?;:\n")


@dataclass(frozen=True)
class Segment:
    """Result of one segmentation step."""
    chunk: Optional[str]
    rest: str


def _last_boundary(window: str, buffer: str, force_flush: bool) -> int:
    """Return one past the last usable terminator in `window`, or 0."""
    for idx in range(len(window) - 1, -1, -1):
        if window[idx] not in TERMINATORS:
            continue
        following = buffer[idx + 1] if idx + 1 < len(buffer) else ""
        # Mid-stream, a trailing "12." may still become "12.50".
        if not following and window[idx] != "\n" and not force_flush:
            continue
        # "12.50", "paule.ai" and "10:30" are not sentence ends.
        if window[idx] != "\n" and following and not following.isspace():
            continue
        return idx + 1
    return 0


def next_segment(
    buffer: str,
    force_flush: bool = False,
    *,
    soft_limit: int = SOFT_LIMIT,
    hard_limit: int = HARD_LIMIT,
    min_space_cut: int = MIN_SPACE_CUT,
) -> Segment:
    """
    Cut the next chunk off the front of `buffer`.

    Args:
        buffer: Accumulated, not yet emitted text
        force_flush: The stream has ended; emit whatever is left
        soft_limit: Minimum boundary position for a cut mid-stream
        hard_limit: Maximum chunk length
        min_space_cut: A fallback space cut must lie past this position

    Returns:
        Segment with the chunk (None if more text is needed) and the remainder
    """
    buffer = buffer.lstrip()
    if not buffer:
        return Segment(chunk=None, rest="")

    window = buffer[:hard_limit]
    fits = len(buffer) <= hard_limit
    boundary = _last_boundary(window, buffer, force_flush)

    cut = 0
    if boundary and (boundary >= soft_limit or force_flush or fits):
        cut = boundary
    elif force_flush and fits:
        cut = len(buffer)
    elif not fits:
        space = window.rfind(" ")
        cut = space if space > min_space_cut else hard_limit

    if not cut:
        return Segment(chunk=None, rest=buffer)

    # buffer starts with a non-space character, so the chunk is never blank.
    return Segment(chunk=buffer[:cut].strip(), rest=buffer[cut:])


def drain(buffer: str, force_flush: bool = False, **limits: int) -> tuple[list[str], str]:
    """Cut as many chunks as `buffer` currently allows."""
    chunks: list[str] = []
    while True:
        segment = next_segment(buffer, force_flush, **limits)
        buffer = segment.rest
        if segment.chunk is None:
            return chunks, buffer
        chunks.append(segment.chunk)
