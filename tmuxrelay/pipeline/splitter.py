"""Splitting long output into chat-sized chunks."""

from __future__ import annotations

from typing import List

from tmuxrelay.core.constants import MESSAGE_LIMIT, MIN_SPLIT_OFFSET, SPLIT_SEARCH_WINDOW


def find_split_point(
    text: str,
    limit: int = MESSAGE_LIMIT,
    search_window: int = SPLIT_SEARCH_WINDOW,
    min_offset: int = MIN_SPLIT_OFFSET,
) -> int:
    """Pick where to cut ``text`` so the first piece fits in ``limit``.

    Prefers the last newline inside the limit when it lies within
    ``search_window`` of the limit and past ``min_offset``; otherwise cuts
    hard at the limit.
    """
    split = min(len(text), limit)
    newline = text.rfind("\n", 0, split)
    if newline > split - search_window and newline > min_offset:
        return newline
    return split


def skip_leading_whitespace(text: str, start: int) -> int:
    """Advance ``start`` past any whitespace in ``text``."""
    while start < len(text) and text[start].isspace():
        start += 1
    return start


def split_message(
    text: str,
    limit: int = MESSAGE_LIMIT,
    search_window: int = SPLIT_SEARCH_WINDOW,
    min_offset: int = MIN_SPLIT_OFFSET,
) -> List[str]:
    """Split text into chunks of at most ``limit`` characters.

    Whitespace at each cut is dropped, so joining the chunks with the
    removed whitespace restores the input.
    """
    chunks: List[str] = []
    pos = 0
    while len(text) - pos > limit:
        cut = find_split_point(text[pos:], limit, search_window, min_offset)
        chunks.append(text[pos : pos + cut])
        pos = skip_leading_whitespace(text, pos + cut)
    if pos < len(text):
        chunks.append(text[pos:])
    return chunks
