"""Pure text stages that turn a raw terminal capture into chat output."""

from .ansi import render_code_block, to_surface_style
from .chrome import strip_chrome
from .formatter import format_capture, render, summarize_tool_calls
from .markers import SideChannelRequest, detect_file_edits, find_requests
from .sanitizer import strip_for_compare, strip_for_display
from .segmenter import OutputSegment, SegmentKind, current_turn_text, segment
from .splitter import find_split_point, split_message

__all__ = [
    "OutputSegment",
    "SegmentKind",
    "SideChannelRequest",
    "current_turn_text",
    "detect_file_edits",
    "find_requests",
    "find_split_point",
    "format_capture",
    "render",
    "render_code_block",
    "segment",
    "split_message",
    "strip_chrome",
    "strip_for_compare",
    "strip_for_display",
    "summarize_tool_calls",
    "to_surface_style",
]
