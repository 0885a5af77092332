"""Turn segmentation for captured assistant output.

The terminal buffer is the whole session's scrollback. Parsing starts right
after the last echoed user prompt that has content, then every line is run
through an ordered rule table. The first rule whose predicate matches owns
the line, so the order of ``LINE_RULES`` and ``TOOL_PARSERS`` is significant:
tool invocation forms must be tried before the generic response-glyph rule or
every tool call would read as prose.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, NamedTuple, Optional, Tuple

from tmuxrelay.core.constants import (
    HINT_SUBSTRINGS,
    MAX_TARGET_LEN,
    PROMPT_GLYPH,
    RESPONSE_GLYPHS,
    STATUS_GLYPH,
    TABLE_BAR_GLYPHS,
    TOOL_OUTPUT_GLYPH,
)
from tmuxrelay.pipeline.sanitizer import strip_sgr


class SegmentKind(str, Enum):
    """Semantic class of a run of output lines."""

    PROSE = "prose"
    TOOL_CALL = "tool_call"
    DISCARD = "discard"


@dataclass
class OutputSegment:
    """One classified run of output lines."""

    kind: SegmentKind
    text: str
    tool_name: Optional[str] = None
    tool_target: Optional[str] = None


@dataclass(frozen=True)
class ToolInvocation:
    """Normalized tool call recognized on a single line."""

    name: str
    target: Optional[str] = None


# ============================================================================
# Turn boundary
# ============================================================================

_PROMPT_PREFIX_RE = re.compile(rf"^{re.escape(PROMPT_GLYPH)}\s*")


def _is_user_prompt(line: str) -> bool:
    clean = strip_sgr(line).strip()
    if not clean.startswith(PROMPT_GLYPH):
        return False
    return bool(_PROMPT_PREFIX_RE.sub("", clean))


def find_turn_start(lines: List[str]) -> int:
    """Index of the first line after the last non-empty prompt echo.

    An empty echoed prompt is the still-open input box and does not count.
    Returns 0 when the buffer holds no prompt echo at all.
    """
    for i in range(len(lines) - 1, -1, -1):
        if _is_user_prompt(lines[i]):
            return i + 1
    return 0


def split_turn(buffer: str) -> Tuple[str, str]:
    """Split the buffer into (earlier history, current turn) at the last prompt echo."""
    lines = buffer.split("\n")
    start = find_turn_start(lines)
    return "\n".join(lines[:start]), "\n".join(lines[start:])


def current_turn_text(buffer: str) -> str:
    """Return the part of the buffer that belongs to the current turn."""
    return split_turn(buffer)[1]


# ============================================================================
# Tool invocation forms
# ============================================================================

_GLYPH = "[" + "".join(RESPONSE_GLYPHS) + "]"
_LEAD = rf"^(?:{_GLYPH}\s*)?"

_WEB_SEARCH_RE = re.compile(_LEAD + r"Web Search\s*\([\"']?(.+?)[\"']?\)", re.IGNORECASE)
_MCP_RE = re.compile(_LEAD + r"([\w.-]+?)\s*-\s*(\w+)\s*\(MCP\)", re.IGNORECASE)

SUMMARY_VERBS = ("Read", "Edit", "Write", "Bash", "Glob", "Grep", "Task", "Searched")
# Verb followed by ":" or "(", by a count ("Read 3 files"), "for" ("Searched for"),
# or nothing. A bare verb starting a sentence of prose does not qualify.
_SUMMARY_RE = re.compile(
    _LEAD
    + r"(" + "|".join(SUMMARY_VERBS) + r")"
    + r"(?:\s*[:(]\s*|\s+(?=\d|for\s)|\s*$)(.*)$"
)

CALL_TOOLS = (
    "Bash",
    "Read",
    "Edit",
    "Write",
    "Glob",
    "Grep",
    "Task",
    "WebFetch",
    "WebSearch",
    "AskUserQuestion",
    "TodoWrite",
    "NotebookEdit",
    "Update",
    "Fetch",
    "Search",
)
_CALL_RE = re.compile(_LEAD + r"(" + "|".join(CALL_TOOLS) + r")\s*\((.*)$")

# Display aliases the terminal UI uses for the same underlying tool
TOOL_ALIASES = {
    "Searched": "Grep",
    "Search": "Grep",
    "Update": "Edit",
    "Fetch": "WebFetch",
}

_EXPAND_HINT_RE = re.compile(r"\(ctrl\+[a-z] to expand\)", re.IGNORECASE)
_ANY_EXPAND_HINT_RE = re.compile(r"\(.*to expand.*\)", re.IGNORECASE)
_COUNT_BOILERPLATE_RE = re.compile(r"^(?:for\s+)?\d+\s*(?:files?|patterns?)\s*", re.IGNORECASE)
_QUOTES_RE = re.compile(r"[\"']")


def normalize_tool_name(name: str) -> str:
    for alias, canonical in TOOL_ALIASES.items():
        if name.lower() == alias.lower():
            return canonical
    return name


def truncate_target(target: str, max_len: int = MAX_TARGET_LEN) -> str:
    """Cut a target to ``max_len`` characters, marking the cut with '...'."""
    if len(target) > max_len:
        return target[: max_len - 3] + "..."
    return target


def _strip_unbalanced_paren(text: str) -> str:
    if text.endswith(")") and text.count(")") > text.count("("):
        return text[:-1].rstrip()
    return text


def _clean_target(raw: str) -> Optional[str]:
    target = _EXPAND_HINT_RE.sub("", raw)
    target = _ANY_EXPAND_HINT_RE.sub("", target)
    target = _COUNT_BOILERPLATE_RE.sub("", target.strip())
    target = _QUOTES_RE.sub("", target)
    target = _strip_unbalanced_paren(target.strip()).strip()
    if not target:
        return None
    return truncate_target(target)


def _parse_web_search(line: str) -> Optional[ToolInvocation]:
    match = _WEB_SEARCH_RE.match(line)
    if not match:
        return None
    query = _QUOTES_RE.sub("", match.group(1).rstrip(")")).strip()
    return ToolInvocation("WebSearch", truncate_target(query) if query else None)


def _parse_mcp(line: str) -> Optional[ToolInvocation]:
    match = _MCP_RE.match(line)
    if not match:
        return None
    provider, method = match.group(1), match.group(2)
    return ToolInvocation("MCP", truncate_target(f"{provider}: {method.replace('_', ' ')}"))


def _parse_summary(line: str) -> Optional[ToolInvocation]:
    match = _SUMMARY_RE.match(line)
    if not match:
        return None
    return ToolInvocation(normalize_tool_name(match.group(1)), _clean_target(match.group(2)))


def _parse_call(line: str) -> Optional[ToolInvocation]:
    match = _CALL_RE.match(line)
    if not match:
        return None
    return ToolInvocation(normalize_tool_name(match.group(1)), _clean_target(match.group(2)))


TOOL_PARSERS: tuple[tuple[str, Callable[[str], Optional[ToolInvocation]]], ...] = (
    ("web_search", _parse_web_search),
    ("mcp", _parse_mcp),
    ("summary", _parse_summary),
    ("call", _parse_call),
)


def parse_tool_invocation(line: str) -> Optional[ToolInvocation]:
    """Recognize a tool call on a trimmed line, trying each form in order."""
    for _name, parser in TOOL_PARSERS:
        invocation = parser(line)
        if invocation is not None:
            return invocation
    return None


# ============================================================================
# Line rules
# ============================================================================


@dataclass
class SegmenterState:
    segments: List[OutputSegment] = field(default_factory=list)
    current: Optional[OutputSegment] = None
    in_tool_output: bool = False

    def flush(self) -> None:
        if self.current is not None:
            self.segments.append(self.current)
            self.current = None

    def open(self, segment: OutputSegment) -> None:
        self.flush()
        self.current = segment

    @property
    def in_prose(self) -> bool:
        return self.current is not None and self.current.kind is SegmentKind.PROSE


class LineRule(NamedTuple):
    """A (predicate, action) pair; the predicate's truthy result feeds the action."""

    name: str
    predicate: Callable[[str, SegmenterState], Any]
    action: Callable[[SegmenterState, str, Any], None]


_SEPARATOR_RE = re.compile(r"^[─━]{5,}$")
_QUOTED_KEY_RE = re.compile(r'^"\w+":')
_RESPONSE_PREFIX_RE = re.compile(rf"^{_GLYPH}\s*")


def _is_blank(line: str, state: SegmenterState) -> bool:
    return not line


def _is_separator(line: str, state: SegmenterState) -> bool:
    return bool(_SEPARATOR_RE.match(line))


def _is_status_or_hint(line: str, state: SegmenterState) -> bool:
    return line.startswith(STATUS_GLYPH) or any(hint in line for hint in HINT_SUBSTRINGS)


def _is_prompt_echo(line: str, state: SegmenterState) -> bool:
    return line.startswith(PROMPT_GLYPH)


def _is_tool_output(line: str, state: SegmenterState) -> bool:
    return line.startswith(TOOL_OUTPUT_GLYPH)


def _is_tool_output_bar(line: str, state: SegmenterState) -> bool:
    # The same bar draws tables inside prose; only tool output is dropped
    return state.in_tool_output and line.startswith(TABLE_BAR_GLYPHS)


def _is_structured_data(line: str, state: SegmenterState) -> bool:
    return (
        line[0] in "[{\""
        or bool(_QUOTED_KEY_RE.match(line))
        or line in ("}", "]")
        or line.startswith("…")
    )


def _match_tool_invocation(line: str, state: SegmenterState) -> Optional[ToolInvocation]:
    return parse_tool_invocation(line)


def _match_response(line: str, state: SegmenterState) -> bool:
    return line.startswith(RESPONSE_GLYPHS)


def _is_continuation(line: str, state: SegmenterState) -> bool:
    return state.in_prose and not state.in_tool_output


def _keep_paragraph_break(state: SegmenterState, line: str, _match: Any) -> None:
    if state.in_prose:
        state.current.text += "\n"


def _discard(state: SegmenterState, line: str, _match: Any) -> None:
    pass


def _enter_tool_output(state: SegmenterState, line: str, _match: Any) -> None:
    state.in_tool_output = True


def _open_tool_call(state: SegmenterState, line: str, invocation: ToolInvocation) -> None:
    state.open(
        OutputSegment(
            kind=SegmentKind.TOOL_CALL,
            text=line,
            tool_name=invocation.name,
            tool_target=invocation.target,
        )
    )
    state.in_tool_output = True


def _open_prose(state: SegmenterState, line: str, _match: Any) -> None:
    state.open(OutputSegment(kind=SegmentKind.PROSE, text=_RESPONSE_PREFIX_RE.sub("", line)))
    state.in_tool_output = False


def _append_prose(state: SegmenterState, line: str, _match: Any) -> None:
    state.current.text += "\n" + line


LINE_RULES: tuple[LineRule, ...] = (
    LineRule("blank", _is_blank, _keep_paragraph_break),
    LineRule("separator", _is_separator, _discard),
    LineRule("status_hint", _is_status_or_hint, _discard),
    LineRule("prompt_echo", _is_prompt_echo, _discard),
    LineRule("tool_output", _is_tool_output, _enter_tool_output),
    LineRule("tool_output_bar", _is_tool_output_bar, _discard),
    LineRule("structured_data", _is_structured_data, _discard),
    LineRule("tool_invocation", _match_tool_invocation, _open_tool_call),
    LineRule("response", _match_response, _open_prose),
    LineRule("continuation", _is_continuation, _append_prose),
)


def classify_line(line: str, state: SegmenterState) -> Optional[str]:
    """Apply the first matching rule to a trimmed line; return its name."""
    for rule in LINE_RULES:
        result = rule.predicate(line, state)
        if result:
            rule.action(state, line, result)
            return rule.name
    return None


def segment(buffer: str) -> List[OutputSegment]:
    """Parse the current turn of a cleaned buffer into ordered segments.

    Only prose and tool-call segments are returned; tool output and chrome
    are consumed by the rules that match them.
    """
    if not buffer:
        return []

    lines = buffer.split("\n")
    state = SegmenterState()

    for raw_line in lines[find_turn_start(lines):]:
        classify_line(strip_sgr(raw_line).strip(), state)

    state.flush()
    return state.segments
