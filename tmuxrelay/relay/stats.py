"""Session activity statistics and their human-readable forms."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence


def format_uptime(start: float, now: float) -> str:
    """Format elapsed time as ``30s``, ``15m``, ``2h 30m`` or ``2d 6h``."""
    seconds = max(int(now - start), 0)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{seconds}s"


def format_last_activity(last: float, now: float) -> str:
    """Format time since the last activity (``just now``, ``30s ago``, ...)."""
    seconds = max(int(now - last), 0)
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    if seconds > 10:
        return f"{seconds}s ago"
    return "just now"


def is_user_allowed(user_id: str, allowed: Sequence[str]) -> bool:
    """An empty allowlist admits everyone."""
    if not allowed:
        return True
    return user_id in allowed


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


@dataclass
class SessionStats:
    """Activity counters for one conversation."""

    start_time: float
    last_activity: float
    message_count: int = 0
    files_edited: List[str] = field(default_factory=list)

    def record_message(self, now: float) -> None:
        self.message_count += 1
        self.last_activity = now

    def record_file_edits(self, paths: Iterable[str]) -> None:
        for path in paths:
            if path not in self.files_edited:
                self.files_edited.append(path)

    def summary(self, now: float) -> str:
        """One-line summary, e.g. ``3 msgs • 15m • just now • 2 files edited``."""
        parts = [
            _plural(self.message_count, "msg"),
            format_uptime(self.start_time, now),
            format_last_activity(self.last_activity, now),
        ]
        if self.files_edited:
            parts.append(f"{_plural(len(self.files_edited), 'file')} edited")
        return " • ".join(parts)


class StatsRegistry:
    """Stats for every conversation, keyed by conversation id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._stats: Dict[str, SessionStats] = {}

    def get_or_create(self, conversation_id: str) -> SessionStats:
        stats = self._stats.get(conversation_id)
        if stats is None:
            now = self._clock()
            stats = SessionStats(start_time=now, last_activity=now)
            self._stats[conversation_id] = stats
        return stats

    def get(self, conversation_id: str) -> Optional[SessionStats]:
        return self._stats.get(conversation_id)

    def remove(self, conversation_id: str) -> None:
        self._stats.pop(conversation_id, None)

    def summary(self, conversation_id: str) -> str:
        stats = self._stats.get(conversation_id)
        if stats is None:
            return ""
        return stats.summary(self._clock())

    def record_message(self, conversation_id: str) -> None:
        self.get_or_create(conversation_id).record_message(self._clock())

    def record_file_edits(self, conversation_id: str, paths: Iterable[str]) -> None:
        self.get_or_create(conversation_id).record_file_edits(paths)
