"""Stateful delivery of terminal output to a chat surface."""

from .rate_limiter import RateLimiter
from .scheduler import ConversationPoller, DeliveryScheduler, PollerTask
from .state import ConversationOutputState, OutputStateRegistry
from .stats import SessionStats, StatsRegistry, format_last_activity, format_uptime, is_user_allowed
from .surface import ChatSurface, ConsoleSurface, Control, MessageHandle, interrupt_control, is_interrupt
from .terminal import TerminalSessionManager, TmuxSessionManager

__all__ = [
    "ChatSurface",
    "ConsoleSurface",
    "Control",
    "ConversationOutputState",
    "ConversationPoller",
    "DeliveryScheduler",
    "MessageHandle",
    "OutputStateRegistry",
    "PollerTask",
    "RateLimiter",
    "SessionStats",
    "StatsRegistry",
    "TerminalSessionManager",
    "TmuxSessionManager",
    "format_last_activity",
    "format_uptime",
    "interrupt_control",
    "is_interrupt",
    "is_user_allowed",
]
