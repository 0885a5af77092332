"""Exception classes for the relay.

Terminal-side failures and chat-surface failures are kept in separate
branches so the poller can tell a dead session from a transient send error.
"""

from __future__ import annotations


class RelayException(Exception):
    """Base exception for relay errors."""

    pass


class TerminalSessionError(RelayException):
    """Base exception for terminal session manager failures."""

    pass


class SessionNotFoundError(TerminalSessionError):
    """Raised when the terminal session backing a conversation is gone."""

    def __init__(self, session: str):
        self.session = session
        super().__init__(f"Session '{session}' does not exist")


class TmuxCommandError(TerminalSessionError):
    """Raised when a tmux invocation exits with a non-zero code."""

    def __init__(self, command: list[str], exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip()[:200] if stderr else ""
        super().__init__(
            f"tmux exited with code {exit_code}: {' '.join(command)[:100]}"
            + (f" ({detail})" if detail else "")
        )


class SurfaceError(RelayException):
    """Raised when the chat surface fails to create or edit a message."""

    def __init__(self, message: str, conversation_id: str = ""):
        self.conversation_id = conversation_id
        super().__init__(message)
