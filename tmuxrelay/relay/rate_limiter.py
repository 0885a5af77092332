"""Per-user rate limiting for dispatched messages."""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional


class RateLimiter:
    """Allow at most one dispatch per user every ``min_interval`` seconds.

    Denied attempts do not push the window forward.
    """

    def __init__(self, min_interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last_sent: Dict[str, float] = {}

    def allow(self, user_id: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(user_id)
        if last is not None and now - last < self.min_interval:
            return False
        self._last_sent[user_id] = now
        return True

    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget one user's history, or everyone's when ``user_id`` is None."""
        if user_id is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(user_id, None)
