"""Drop terminal UI decoration lines from a captured buffer."""

from __future__ import annotations

import re

from tmuxrelay.core.constants import LEGACY_PROMPT_GLYPH, PROMPT_GLYPH, SHORTCUTS_HINT
from tmuxrelay.pipeline.sanitizer import strip_sgr

_RULE_RE = re.compile(r"^[─━]{10,}$")
_EMPTY_PROMPT_RE = re.compile(
    rf"^[{re.escape(LEGACY_PROMPT_GLYPH)}{re.escape(PROMPT_GLYPH)}]\s*$"
)


def is_chrome_line(line: str) -> bool:
    """Return True for separator rules, the empty input box and the help hint."""
    clean = strip_sgr(line).strip()
    return bool(
        _RULE_RE.match(clean) or _EMPTY_PROMPT_RE.match(clean) or clean == SHORTCUTS_HINT
    )


def strip_chrome(text: str) -> str:
    """Remove decoration lines, keeping status lines and colors intact."""
    result = [line for line in text.split("\n") if not is_chrome_line(line)]

    while result and not strip_sgr(result[-1]).strip():
        result.pop()

    return "\n".join(result).strip()
