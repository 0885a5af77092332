"""Text sanitizing for captured terminal buffers.

Two flavours are produced from every capture: a comparison form with all
color/style sequences removed (used for change detection and parsing) and a
display form that keeps colors for the raw snapshot view.
"""

from __future__ import annotations

import re

SGR_RE = re.compile(r"\x1b\[[0-9;]*m")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


def strip_sgr(text: str) -> str:
    """Remove SGR (color/style) escape sequences, leaving everything else."""
    return SGR_RE.sub("", text)


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\r", "")
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def strip_for_compare(raw: str) -> str:
    """Clean a capture for byte-for-byte comparison.

    Strips color codes, drops carriage returns, collapses runs of three or
    more newlines to a single blank line and trims.
    """
    if not raw:
        return ""
    return _normalize_whitespace(strip_sgr(raw))


def strip_for_display(raw: str) -> str:
    """Clean a capture for display, keeping color codes."""
    if not raw:
        return ""
    return _normalize_whitespace(raw)
