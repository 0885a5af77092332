"""Chat surface abstraction the scheduler delivers output to."""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from tmuxrelay import style_tokens
from tmuxrelay.core.constants import INTERRUPT_CONTROL_PREFIX

INTERRUPT_LABEL = "⏹ Stop"


@dataclass(frozen=True)
class Control:
    """An interactive affordance attached to a message (e.g. a button)."""

    custom_id: str
    label: str
    style: str = "danger"


def interrupt_control(conversation_id: str) -> Control:
    """Build the stop control for a conversation."""
    return Control(custom_id=f"{INTERRUPT_CONTROL_PREFIX}{conversation_id}", label=INTERRUPT_LABEL)


def is_interrupt(control: Control) -> bool:
    return control.custom_id.startswith(INTERRUPT_CONTROL_PREFIX)


@dataclass
class MessageHandle:
    """Editable reference to a message already posted to the surface."""

    conversation_id: str
    message_id: str
    content: str = ""
    controls: List[Control] = field(default_factory=list)

    @property
    def has_interrupt(self) -> bool:
        return any(is_interrupt(c) for c in self.controls)


class ChatSurface(ABC):
    """Primitives a chat backend must provide.

    Implementations raise ``SurfaceError`` (or any other exception) on
    failure; the scheduler treats every failure here as transient.
    """

    @abstractmethod
    async def create_message(
        self, conversation_id: str, content: str, controls: Sequence[Control] = ()
    ) -> MessageHandle:
        """Post a new message and return a handle for later edits."""

    @abstractmethod
    async def edit_message(
        self, handle: MessageHandle, content: str, controls: Sequence[Control] = ()
    ) -> MessageHandle:
        """Replace the content and controls of an existing message."""

    @abstractmethod
    async def show_liveness(self, conversation_id: str) -> None:
        """Signal that output is being produced (typing indicator)."""

    @abstractmethod
    async def send_notice(self, conversation_id: str, text: str) -> None:
        """Post a one-off informational notice."""


class ConsoleSurface(ChatSurface):
    """Surface that renders messages to a rich console.

    Edits are shown as a new panel tagged with the message id since a
    terminal cannot rewrite earlier output.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._ids = itertools.count(1)

    def _panel(self, handle: MessageHandle, edited: bool) -> Panel:
        title = f"{style_tokens.MESSAGE_ICON} #{handle.message_id}"
        if edited:
            title += f" {style_tokens.EDIT_ICON} edited"
        subtitle = None
        if handle.controls:
            subtitle = Text(" ".join(f"[{c.label}]" for c in handle.controls), style=style_tokens.ORANGE)
        return Panel(
            Text(handle.content),
            title=title,
            title_align="left",
            subtitle=subtitle,
            subtitle_align="right",
            border_style=style_tokens.PANEL_BORDER,
        )

    async def create_message(
        self, conversation_id: str, content: str, controls: Sequence[Control] = ()
    ) -> MessageHandle:
        handle = MessageHandle(
            conversation_id=conversation_id,
            message_id=str(next(self._ids)),
            content=content,
            controls=list(controls),
        )
        self.console.print(self._panel(handle, edited=False))
        return handle

    async def edit_message(
        self, handle: MessageHandle, content: str, controls: Sequence[Control] = ()
    ) -> MessageHandle:
        handle.content = content
        handle.controls = list(controls)
        self.console.print(self._panel(handle, edited=True))
        return handle

    async def show_liveness(self, conversation_id: str) -> None:
        self.console.print(Text(f"{style_tokens.LIVENESS_ICON} working", style=style_tokens.SUBTLE))

    async def send_notice(self, conversation_id: str, text: str) -> None:
        self.console.print(Text(f"{style_tokens.NOTICE_ICON} {text}", style=style_tokens.WARNING))
