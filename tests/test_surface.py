"""Tests for chat surface controls and the console surface."""

import pytest
from rich.console import Console

from tmuxrelay.relay.surface import (
    INTERRUPT_LABEL,
    ConsoleSurface,
    Control,
    MessageHandle,
    interrupt_control,
    is_interrupt,
)


@pytest.fixture
def surface():
    return ConsoleSurface(Console(record=True, width=80, force_terminal=False))


def _output(surface):
    return surface.console.export_text()


class TestControls:
    def test_interrupt_control(self):
        control = interrupt_control("proj")
        assert control.custom_id == "stop:proj"
        assert control.label == INTERRUPT_LABEL
        assert is_interrupt(control)

    def test_other_controls_are_not_interrupts(self):
        assert not is_interrupt(Control("retry:proj", "Retry"))

    def test_handle_has_interrupt(self):
        handle = MessageHandle("proj", "1", "hi", [interrupt_control("proj")])
        assert handle.has_interrupt
        assert not MessageHandle("proj", "2").has_interrupt


class TestConsoleSurface:
    @pytest.mark.asyncio
    async def test_create_assigns_increasing_ids(self, surface):
        first = await surface.create_message("proj", "hello", [interrupt_control("proj")])
        second = await surface.create_message("proj", "again")

        assert (first.message_id, second.message_id) == ("1", "2")
        assert first.controls[0].custom_id == "stop:proj"
        text = _output(surface)
        assert "hello" in text
        assert "#1" in text
        assert INTERRUPT_LABEL in text

    @pytest.mark.asyncio
    async def test_edit_updates_handle(self, surface):
        handle = await surface.create_message("proj", "v1", [interrupt_control("proj")])
        edited = await surface.edit_message(handle, "v2", [])

        assert edited.message_id == handle.message_id
        assert edited.content == "v2"
        assert edited.controls == []
        assert "edited" in _output(surface)

    @pytest.mark.asyncio
    async def test_content_with_brackets_printed_verbatim(self, surface):
        await surface.create_message("proj", "[bold]not markup[/bold]")
        await surface.send_notice("proj", "[SKILL_REQUEST] pending")

        text = _output(surface)
        assert "[bold]not markup[/bold]" in text
        assert "[SKILL_REQUEST] pending" in text

    @pytest.mark.asyncio
    async def test_liveness(self, surface):
        await surface.show_liveness("proj")
        assert "working" in _output(surface)
