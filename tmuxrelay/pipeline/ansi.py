"""Downconvert terminal escape sequences to the chat surface's ANSI subset.

The surface renders ``ansi`` code blocks but only understands reset (0),
bold (1), underline (4) and the eight base foreground (30-37) and background
(40-47) colors. Everything else is mapped onto that set or removed.
"""

from __future__ import annotations

import re
from typing import List

from tmuxrelay.core.constants import MESSAGE_CEILING

# Full CSI grammar: parameter bytes, intermediate bytes, final byte
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_SGR_RE = re.compile(r"\x1b\[([0-9;]*)m")
_SUPPORTED_SGR_RE = re.compile(r"\x1b\[[0-9;]*m")
# OSC (window title etc.), BEL or ST terminated; unterminated runs to end of line
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b\n]*(?:\x07|\x1b\\)?")
# DCS / APC / PM strings, ST terminated
_STRING_RE = re.compile(r"\x1b[P_^][^\x1b]*(?:\x1b\\)?")
_CHARSET_RE = re.compile(r"\x1b[()][A-Za-z0-9]")
_TWO_BYTE_RE = re.compile(r"\x1b[78=>cDEHM]")
_LONE_ESC_RE = re.compile(r"\x1b(?!\[)")
_DANGLING_CSI_RE = re.compile(r"\x1b\[(?![0-9;]*m)")
# "[31m" left behind after its ESC was dropped somewhere upstream
_ORPHAN_SGR_RE = re.compile(r"(?<!\x1b)\[[0-9][0-9;]*m")
_C0_RE = re.compile(r"[\x00-\x08\x0b-\x1a\x1c-\x1f\x7f]")

ZERO_WIDTH_SPACE = "\u200b"
FENCE = "```"

BLACK, RED, GREEN, YELLOW, BLUE, MAGENTA, CYAN, WHITE = range(30, 38)


def color_256_to_basic(n: int) -> int:
    """Bucket a 256-color palette index into a base foreground code (30-37).

    0-15 map onto the base and bright ranges, 232-255 is the grayscale ramp,
    and the 6x6x6 cube is classified by which channels are "high" (level 3+
    out of 0-5).
    """
    n = max(0, min(n, 255))
    if n < 8:
        return 30 + n
    if n < 16:
        return 30 + (n - 8)
    if n >= 232:
        return BLACK if n - 232 < 12 else WHITE

    idx = n - 16
    r = idx // 36
    g = (idx % 36) // 6
    b = idx % 6

    if r >= 3 and g >= 3 and b <= 2:
        return YELLOW
    if r <= 1 and g >= 3 and b >= 3:
        return CYAN
    if r >= 3 and g <= 2 and b >= 3:
        return MAGENTA
    if g >= 3 and r <= 2 and b <= 2:
        return GREEN
    if r >= 3 and g <= 2 and b <= 2:
        return RED
    if b >= 3 and r <= 2 and g <= 2:
        return BLUE
    if r + g + b >= 5:
        return WHITE
    return BLACK


def rgb_to_basic(r: int, g: int, b: int) -> int:
    """Bucket a 24-bit color into a base foreground code (30-37)."""
    if r >= 150 and g >= 150 and b < 100:
        return YELLOW
    if r < 100 and g >= 150 and b >= 150:
        return CYAN
    if r >= 150 and g < 100 and b >= 150:
        return MAGENTA
    if g >= 150 and r < 120 and b < 120:
        return GREEN
    if r >= 150 and g < 120 and b < 120:
        return RED
    if b >= 150 and r < 120 and g < 120:
        return BLUE
    if r + g + b >= 250:
        return WHITE
    return BLACK


# SGR parameters never need more digits than this; longer ones are out of range
_MAX_PARAM_DIGITS = 3


def _parse_param(value: str) -> int:
    """Parse one SGR parameter; -1 marks a value too long to be meaningful."""
    if not value:
        return 0
    if len(value) > _MAX_PARAM_DIGITS:
        return -1
    return int(value)


def convert_sgr_params(params: str) -> List[int]:
    """Map one SGR parameter string onto the supported code set.

    Extended colors (``38;5;n``, ``38;2;r;g;b`` and their ``48`` background
    forms) are consumed wherever they appear in the list. A malformed
    extended color swallows the rest of the sequence.
    """
    if params == "":
        return [0]

    parts = params.split(";")
    codes: List[int] = []
    i = 0
    while i < len(parts):
        code = _parse_param(parts[i])

        if code in (38, 48):
            offset = 0 if code == 38 else 10
            mode = parts[i + 1] if i + 1 < len(parts) else None
            if mode == "5" and i + 2 < len(parts) and parts[i + 2]:
                index = _parse_param(parts[i + 2])
                if index < 0:
                    break
                codes.append(color_256_to_basic(index) + offset)
                i += 3
                continue
            if mode == "2" and i + 4 < len(parts):
                r, g, b = (_parse_param(p) for p in parts[i + 2 : i + 5])
                if min(r, g, b) < 0:
                    break
                codes.append(rgb_to_basic(r, g, b) + offset)
                i += 5
                continue
            break

        if code in (0, 1, 4) or 30 <= code <= 37 or 40 <= code <= 47:
            codes.append(code)
        elif code in (39, 49):
            codes.append(0)
        elif 90 <= code <= 97 or 100 <= code <= 107:
            codes.append(code - 60)
        i += 1

    return codes


def _rewrite_sgr(match: re.Match) -> str:
    codes = convert_sgr_params(match.group(1))
    if not codes:
        return ""
    return "\x1b[" + ";".join(str(c) for c in codes) + "m"


def _drop_unsupported_csi(match: re.Match) -> str:
    seq = match.group(0)
    return seq if _SUPPORTED_SGR_RE.fullmatch(seq) else ""


def defuse_fences(text: str) -> str:
    """Break literal triple backticks so they cannot close a code fence."""
    while FENCE in text:
        text = text.replace(FENCE, "`" + ZERO_WIDTH_SPACE + "``")
    return text


def to_surface_style(raw: str) -> str:
    """Convert arbitrary terminal output to the surface's ANSI subset.

    Never raises; partial or unknown escape fragments are deleted.
    """
    if not raw:
        return ""

    text = _OSC_RE.sub("", raw)
    text = _STRING_RE.sub("", text)
    text = _SGR_RE.sub(_rewrite_sgr, text)
    text = _CSI_RE.sub(_drop_unsupported_csi, text)
    text = _CHARSET_RE.sub("", text)
    text = _TWO_BYTE_RE.sub("", text)
    text = _LONE_ESC_RE.sub("", text)
    text = _DANGLING_CSI_RE.sub("", text)
    text = _ORPHAN_SGR_RE.sub("", text)
    text = _C0_RE.sub("", text)
    return defuse_fences(text)


def render_code_block(raw: str, ceiling: int = MESSAGE_CEILING) -> str:
    """Wrap converted output in an ``ansi`` fence that fits in one message.

    When the output is too long the most recent part is kept.
    """
    header = FENCE + "ansi\n"
    footer = "\n" + FENCE
    budget = max(ceiling - len(header) - len(footer), 0)

    body = to_surface_style(raw)
    if len(body) > budget:
        # The cut may land inside an escape sequence; converting again drops the fragment
        body = to_surface_style(body[-budget:]) if budget else ""
    return f"{header}{body}{footer}"
