"""Pydantic models for relay configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tmuxrelay.core import constants


class RelayConfig(BaseModel):
    """Effective relay configuration.

    Defaults mirror the timing and size budget of the chat surface the relay
    was built for; every field can be overridden from settings.json.
    """

    poll_interval: float = Field(
        default=constants.POLL_INTERVAL, gt=0, description="Seconds between poller ticks"
    )
    capture_lines: int = Field(
        default=constants.CAPTURE_LINES, gt=0, description="Scrollback lines captured per tick"
    )
    snapshot_lines: int = Field(
        default=constants.SNAPSHOT_LINES, gt=0, description="Default lines for raw snapshots"
    )
    idle_timeout: float = Field(
        default=constants.IDLE_TIMEOUT,
        gt=0,
        description="Seconds without change before the stop control is retired",
    )
    message_ceiling: int = Field(
        default=constants.MESSAGE_CEILING, gt=0, description="Hard per-message length limit"
    )
    message_limit: int = Field(
        default=constants.MESSAGE_LIMIT, gt=0, description="Length at which output is split"
    )
    split_search_window: int = Field(
        default=constants.SPLIT_SEARCH_WINDOW,
        ge=0,
        description="How far back from the limit a newline split point is searched",
    )
    min_split_offset: int = Field(
        default=constants.MIN_SPLIT_OFFSET,
        ge=0,
        description="A newline split point must lie past this offset",
    )
    min_content_length: int = Field(
        default=constants.MIN_CONTENT_LENGTH,
        ge=0,
        description="Formatted output shorter than this counts as no output",
    )
    rate_limit_seconds: float = Field(
        default=1.0, ge=0, description="Minimum seconds between dispatches per user"
    )
    allowed_users: list[str] = Field(
        default_factory=list, description="User ids allowed to talk to sessions (empty = all)"
    )
    session_prefix: str = Field(default="claude-", description="tmux session name prefix")
    tmux_binary: str = Field(default="tmux", description="tmux executable")
    request_keywords: list[str] = Field(
        default_factory=list,
        description="Side-channel marker keywords to act on (empty = all)",
    )
    verbose: bool = Field(default=False, description="Write JSONL debug logs per conversation")

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _check_limits(self) -> "RelayConfig":
        if self.message_limit > self.message_ceiling:
            raise ValueError(
                f"message_limit ({self.message_limit}) exceeds message_ceiling "
                f"({self.message_ceiling})"
            )
        return self


# Fields persisted by ConfigManager.save_config
USER_FIELDS = {
    "poll_interval",
    "capture_lines",
    "idle_timeout",
    "rate_limit_seconds",
    "allowed_users",
    "session_prefix",
    "tmux_binary",
    "request_keywords",
    "verbose",
}
