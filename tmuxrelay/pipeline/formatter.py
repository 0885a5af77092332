"""Presentation of segmented output as chat-ready text.

Runs of consecutive tool calls collapse into one summary block (one line per
tool type); prose blocks are emitted in their original order between them.
"""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from tmuxrelay.pipeline.chrome import strip_chrome
from tmuxrelay.pipeline.sanitizer import strip_for_compare
from tmuxrelay.pipeline.segmenter import OutputSegment, SegmentKind, segment

# tool name -> (icon, friendly verb)
_TOOL_DISPLAY: dict[str, tuple[str, str]] = {
    "Bash": ("⚡", "Ran command"),
    "Read": ("📖", "Read file"),
    "Edit": ("✏️", "Edited"),
    "Write": ("📝", "Created"),
    "Glob": ("🔍", "Searched"),
    "Grep": ("🔍", "Searched"),
    "Task": ("🤖", "Spawned agent"),
    "WebFetch": ("🌐", "Fetched"),
    "WebSearch": ("🔎", "Searched"),
    "AskUserQuestion": ("❓", "Asked"),
    "TodoWrite": ("📋", "Updated todos"),
    "NotebookEdit": ("✏️", "Edited notebook"),
    "MCP": ("📔", "MCP"),
}

_FALLBACK_ICON = "🔧"

# Buckets with more calls than this collapse to a count
MAX_LISTED_CALLS = 3


def get_tool_display(tool_name: str) -> Tuple[str, str]:
    """Return (icon, verb) for a tool; unknown tools keep their raw name."""
    if tool_name in _TOOL_DISPLAY:
        return _TOOL_DISPLAY[tool_name]
    return (_FALLBACK_ICON, tool_name)


def _summarize_bucket(tool_name: str, calls: Sequence[OutputSegment]) -> str:
    icon, verb = get_tool_display(tool_name)
    count_form = f"{icon} {verb} ×{len(calls)}"

    if len(calls) == 1:
        target = calls[0].tool_target
        return f"{icon} {verb}: `{target}`" if target else f"{icon} {verb}"

    if len(calls) <= MAX_LISTED_CALLS:
        targets = ", ".join(f"`{c.tool_target}`" for c in calls if c.tool_target)
        return f"{icon} {verb}: {targets}" if targets else count_form

    return count_form


def summarize_tool_calls(calls: Sequence[OutputSegment]) -> str:
    """Collapse a run of tool calls into one line per tool name.

    Buckets keep first-seen order. One call shows its target, two or three
    list their targets, and four or more show only a count.
    """
    if not calls:
        return ""

    buckets: Dict[str, List[OutputSegment]] = {}
    for call in calls:
        buckets.setdefault(call.tool_name or "Unknown", []).append(call)

    return "\n".join(_summarize_bucket(name, group) for name, group in buckets.items())


def render(segments: Sequence[OutputSegment]) -> str:
    """Render segments as blocks separated by a blank line."""
    blocks: List[str] = []
    pending: List[OutputSegment] = []

    for seg in segments:
        if seg.kind is SegmentKind.TOOL_CALL:
            pending.append(seg)
        elif seg.kind is SegmentKind.PROSE:
            if pending:
                blocks.append(summarize_tool_calls(pending))
                pending = []
            blocks.append(seg.text.strip())

    if pending:
        blocks.append(summarize_tool_calls(pending))

    return "\n\n".join(blocks).strip()


def format_capture(raw: str) -> str:
    """Run a raw capture through the whole text pipeline."""
    return render(segment(strip_chrome(strip_for_compare(raw))))
