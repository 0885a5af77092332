"""Shared constants for the relay core."""

from __future__ import annotations

# Glyphs the assistant's terminal UI draws
PROMPT_GLYPH = "❯"
LEGACY_PROMPT_GLYPH = ">"
RESPONSE_GLYPHS = ("●", "⏺")
TOOL_OUTPUT_GLYPH = "⎿"
STATUS_GLYPH = "⏵"
TABLE_BAR_GLYPHS = ("│", "|")
SHORTCUTS_HINT = "? for shortcuts"

# Substrings that mark status-bar / keybinding hint lines
HINT_SUBSTRINGS = (
    "bypass permissions",
    "Context left",
    "shift+Tab",
    "ctrl+",
    "to expand",
    SHORTCUTS_HINT,
)

# Tool targets longer than this are truncated with an ellipsis marker
MAX_TARGET_LEN = 50

# Chat surface limits
MESSAGE_CEILING = 2000
MESSAGE_LIMIT = 1950
SPLIT_SEARCH_WINDOW = 300
MIN_SPLIT_OFFSET = 100

# Formatted output shorter than this is treated as "nothing yet"
MIN_CONTENT_LENGTH = 3

# Poller timing (seconds)
POLL_INTERVAL = 1.5
IDLE_TIMEOUT = 5.0

# Scrollback lines captured per tick
CAPTURE_LINES = 200
SNAPSHOT_LINES = 100

# Interrupt control ids are "<prefix><conversation_id>"
INTERRUPT_CONTROL_PREFIX = "stop:"
