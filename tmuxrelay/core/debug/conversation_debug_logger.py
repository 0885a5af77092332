"""Delivery trace for a single conversation.

When verbose logging is on, every decision a poller makes (content change,
message create/edit, chunk finalization, stop-control retirement, side-channel
request, failure, termination) is appended as one JSON line to
``Paths.debug_log_file(conversation_id)``:

    {"ts": "...", "elapsed_ms": 12, "turn": 3, "event": "message_edited",
     "component": "poller", "data": {"message_id": "7", "length": 418}}

Reading the file back gives a replayable timeline of what the chat surface
was asked to do and why.
"""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING

from tmuxrelay.core.paths import Paths, get_paths

if TYPE_CHECKING:
    from tmuxrelay.pipeline.markers import SideChannelRequest

# Text values (errors, marker sources) are cut to this many characters
PREVIEW_LEN = 200


def _preview(value: Any, max_len: int = PREVIEW_LEN) -> Any:
    if isinstance(value, str) and len(value) > max_len:
        return value[:max_len] + f"... ({len(value)} chars)"
    return value


class ConversationDebugLogger:
    """Append-only JSONL trace of one conversation's delivery decisions.

    Safe to call from tmux worker threads. ``noop()`` returns a disabled
    logger so callers never need to check ``verbose`` themselves.
    """

    def __init__(self, file_path: Path):
        self._file: Optional[Path] = Path(file_path)
        self._lock: Optional[threading.Lock] = threading.Lock()
        self._start_time = time.monotonic()
        self._file.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_conversation(
        cls, conversation_id: str, paths: Optional[Paths] = None
    ) -> "ConversationDebugLogger":
        """Logger writing to the conversation's file under the logs directory."""
        return cls((paths or get_paths()).debug_log_file(conversation_id))

    @classmethod
    def noop(cls) -> "ConversationDebugLogger":
        instance = cls.__new__(cls)
        instance._file = None
        instance._lock = None
        instance._start_time = 0.0
        return instance

    @property
    def enabled(self) -> bool:
        return self._file is not None

    @property
    def file_path(self) -> Optional[Path]:
        return self._file

    def log(self, event: str, component: str, turn: Optional[int] = None, **data: Any) -> None:
        """Append one event. ``turn`` ties the event to a user turn when known."""
        if self._file is None:
            return

        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "elapsed_ms": int((time.monotonic() - self._start_time) * 1000),
            "turn": turn,
            "event": event,
            "component": component,
            "data": {k: _preview(v) for k, v in data.items()},
        }
        line = json.dumps(entry, default=str) + "\n"

        with self._lock:
            with open(self._file, "a", encoding="utf-8") as f:
                f.write(line)

    # ------------------------------------------------------------------
    # Poller events
    # ------------------------------------------------------------------

    def poller_started(self, interval: float) -> None:
        self.log("poller_start", "scheduler", interval=interval)

    def content_changed(self, turn: int, length: int) -> None:
        self.log("content_changed", "poller", turn, length=length)

    def message_written(
        self, turn: int, message_id: str, length: int, controls: int, created: bool
    ) -> None:
        event = "message_created" if created else "message_edited"
        self.log(event, "poller", turn, message_id=message_id, length=length, controls=controls)

    def chunk_finalized(self, turn: int, length: int, offset: int) -> None:
        self.log("chunk_finalized", "poller", turn, length=length, offset=offset)

    def interrupt_retired(self, turn: int, idle_seconds: float) -> None:
        self.log("interrupt_retired", "poller", turn, idle=round(idle_seconds, 3))

    def request_detected(self, turn: int, request: "SideChannelRequest") -> None:
        self.log("request_detected", "poller", turn, keyword=request.keyword, source=request.source)

    def delivery_failed(self, turn: int, stage: str, error: BaseException) -> None:
        self.log(
            "delivery_failed", "poller", turn, stage=stage, error=f"{type(error).__name__}: {error}"
        )

    def terminated(self, turn: int) -> None:
        self.log("terminated", "poller", turn)
