"""Shared styling tokens for console output."""

# =============================================================================
# Colors
# =============================================================================

SUBTLE = "#9aa0ac"
ERROR = "#ff5c57"
WARNING = "#ffb347"
SUCCESS = "#6ad18f"
PANEL_BORDER = "#3a3f4b"

BLUE_LIGHT = "#9ccffd"  # Table headers
ORANGE = "#ff8c00"  # Interrupt control

# =============================================================================
# Glyphs
# =============================================================================

MESSAGE_ICON = "⏺"
EDIT_ICON = "⎿"
LIVENESS_ICON = "…"
NOTICE_ICON = "⚠"
