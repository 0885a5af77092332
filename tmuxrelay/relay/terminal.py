"""Terminal session managers.

The scheduler talks to terminal sessions through ``TerminalSessionManager``.
``TmuxSessionManager`` maps conversation ids onto tmux sessions named
``<prefix><conversation_id>`` and drives them with the tmux CLI.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import List

from tmuxrelay.core.constants import CAPTURE_LINES
from tmuxrelay.core.exceptions import SessionNotFoundError, TmuxCommandError

__all__ = ["TerminalSessionManager", "TmuxSessionManager"]

logger = logging.getLogger(__name__)

# Fragments of tmux stderr that mean the target session is gone
_MISSING_SESSION_MARKERS = (
    "can't find session",
    "can't find pane",
    "can't find window",
    "session not found",
    "no server running",
    "error connecting to",
)


class TerminalSessionManager(ABC):
    """Access to the terminal session behind a conversation."""

    @abstractmethod
    async def capture_buffer(self, conversation_id: str, lines: int = CAPTURE_LINES) -> str:
        """Return the last ``lines`` lines of scrollback, escapes included.

        Raises:
            SessionNotFoundError: If the session no longer exists
        """

    @abstractmethod
    async def send_keystrokes(self, conversation_id: str, text: str) -> None:
        """Type ``text`` into the session and submit it."""

    @abstractmethod
    async def send_interrupt(self, conversation_id: str) -> None:
        """Ask the running assistant to stop its current action."""

    @abstractmethod
    async def session_exists(self, conversation_id: str) -> bool:
        """Return True if the session is still alive."""


def _is_missing_session(stderr: str) -> bool:
    lowered = (stderr or "").lower()
    return any(marker in lowered for marker in _MISSING_SESSION_MARKERS)


class TmuxSessionManager(TerminalSessionManager):
    """Session manager backed by the tmux CLI."""

    def __init__(
        self,
        session_prefix: str = "claude-",
        tmux_binary: str = "tmux",
        timeout: float = 10.0,
    ):
        self.session_prefix = session_prefix
        self.tmux_binary = tmux_binary
        self.timeout = timeout

    def session_name(self, conversation_id: str) -> str:
        return f"{self.session_prefix}{conversation_id}"

    def _run_tmux_command(
        self,
        args: list[str],
        session: str = "",
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a tmux command.

        Args:
            args: Command arguments (without the tmux binary)
            session: Session the command targets, for error mapping
            check: Whether to raise on non-zero exit code

        Returns:
            CompletedProcess result

        Raises:
            SessionNotFoundError: If tmux reports the session is missing
            TmuxCommandError: On any other non-zero exit or launch failure
        """
        cmd = [self.tmux_binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TmuxCommandError(cmd, -1, str(e)) from e

        if check and result.returncode != 0:
            if session and _is_missing_session(result.stderr):
                raise SessionNotFoundError(session)
            logger.warning(f"tmux command failed: {result.stderr.strip()}")
            raise TmuxCommandError(cmd, result.returncode, result.stderr)

        return result

    async def _run(self, args: list[str], session: str = "", check: bool = True):
        return await asyncio.to_thread(self._run_tmux_command, args, session, check)

    async def capture_buffer(self, conversation_id: str, lines: int = CAPTURE_LINES) -> str:
        session = self.session_name(conversation_id)
        result = await self._run(
            ["capture-pane", "-t", session, "-p", "-e", "-S", f"-{lines}", "-E", ""],
            session=session,
        )
        return result.stdout

    async def send_keystrokes(self, conversation_id: str, text: str) -> None:
        session = self.session_name(conversation_id)
        # -l sends the text literally so key names inside it are not interpreted
        await self._run(["send-keys", "-t", session, "-l", text], session=session)
        await self._run(["send-keys", "-t", session, "Enter"], session=session)

    async def send_interrupt(self, conversation_id: str) -> None:
        session = self.session_name(conversation_id)
        await self._run(["send-keys", "-t", session, "Escape"], session=session)

    async def session_exists(self, conversation_id: str) -> bool:
        result = await self._run(
            ["has-session", "-t", self.session_name(conversation_id)], check=False
        )
        return result.returncode == 0

    def list_sessions(self) -> List[str]:
        """Return conversation ids of all prefixed tmux sessions."""
        result = self._run_tmux_command(["list-sessions", "-F", "#{session_name}"], check=False)
        if result.returncode != 0:
            # tmux exits non-zero when no server is running
            return []
        return [
            name[len(self.session_prefix):]
            for name in result.stdout.splitlines()
            if name.startswith(self.session_prefix)
        ]
