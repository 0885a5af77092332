"""Debug logging utilities."""

from .conversation_debug_logger import ConversationDebugLogger

__all__ = ["ConversationDebugLogger"]
