"""Tests for the delivery scheduler and its pollers."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tmuxrelay.config.models import RelayConfig
from tmuxrelay.core.exceptions import SessionNotFoundError, SurfaceError, TmuxCommandError
from tmuxrelay.core.paths import ENV_TMUXRELAY_LOG_DIR, Paths
from tmuxrelay.relay.scheduler import (
    SESSION_ENDED_NOTICE,
    ConversationPoller,
    DeliveryScheduler,
    PollerTask,
)
from tmuxrelay.relay.state import ConversationOutputState
from tmuxrelay.relay.stats import StatsRegistry
from tmuxrelay.relay.surface import ChatSurface, Control, MessageHandle
from tmuxrelay.relay.terminal import TerminalSessionManager

STOP_ID = "stop:c1"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeTerminal(TerminalSessionManager):
    def __init__(self, buffer=""):
        self.buffer = buffer
        self.alive = True
        self.capture_error = None
        self.send_error = None
        self.sent = []
        self.interrupts = 0
        self.captured_lines = []

    async def capture_buffer(self, conversation_id, lines=200):
        self.captured_lines.append(lines)
        if self.capture_error is not None:
            raise self.capture_error
        if not self.alive:
            raise SessionNotFoundError(f"claude-{conversation_id}")
        return self.buffer

    async def send_keystrokes(self, conversation_id, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((conversation_id, text))

    async def send_interrupt(self, conversation_id):
        if self.send_error is not None:
            raise self.send_error
        self.interrupts += 1

    async def session_exists(self, conversation_id):
        return self.alive


class FakeSurface(ChatSurface):
    """Records every call; edits return a fresh handle like a remote API."""

    def __init__(self):
        self.created = []
        self.edits = []
        self.liveness = 0
        self.notices = []
        self.fail = False
        self.before_create = None

    async def create_message(self, conversation_id, content, controls=()):
        if self.fail:
            raise SurfaceError("create failed", conversation_id)
        if self.before_create is not None:
            self.before_create()
        handle = MessageHandle(conversation_id, str(len(self.created) + 1), content, list(controls))
        self.created.append((content, [c.custom_id for c in controls]))
        return handle

    async def edit_message(self, handle, content, controls=()):
        if self.fail:
            raise SurfaceError("edit failed", handle.conversation_id)
        self.edits.append((handle.message_id, content, [c.custom_id for c in controls]))
        return MessageHandle(handle.conversation_id, handle.message_id, content, list(controls))

    async def show_liveness(self, conversation_id):
        self.liveness += 1

    async def send_notice(self, conversation_id, text):
        self.notices.append(text)


def _make_poller(buffer="", on_request=None, on_terminated=None, **config):
    terminal = FakeTerminal(buffer)
    surface = FakeSurface()
    clock = FakeClock()
    state = ConversationOutputState()
    stats = StatsRegistry(clock=lambda: 0.0)
    poller = ConversationPoller(
        "c1",
        state,
        terminal,
        surface,
        RelayConfig(**config),
        clock=clock,
        stats=stats,
        on_request=on_request,
        on_terminated=on_terminated,
    )
    return SimpleNamespace(
        poller=poller, state=state, terminal=terminal, surface=surface, clock=clock, stats=stats
    )


def _long_reply(rows, start=0):
    return "\n".join(f"row {i:03d} " + "x" * 60 for i in range(start, start + rows))


# ---------------------------------------------------------------------------
# ConversationPoller
# ---------------------------------------------------------------------------


class TestStreaming:
    """Create, edit and no-op decisions."""

    @pytest.mark.asyncio
    async def test_first_output_creates_message_with_stop_control(self):
        t = _make_poller("❯ hi\n● Hello there")

        assert await t.poller.tick()

        assert t.surface.created == [("Hello there", [STOP_ID])]
        assert t.state.in_flight.message_id == "1"
        assert t.state.in_flight_text == "Hello there"
        assert not t.state.awaiting_first_output

    @pytest.mark.asyncio
    async def test_unchanged_buffer_is_a_noop(self):
        t = _make_poller("❯ hi\n● Hello there")
        await t.poller.tick()
        await t.poller.tick()

        assert len(t.surface.created) == 1
        assert t.surface.edits == []

    @pytest.mark.asyncio
    async def test_new_content_edits_in_flight_message(self):
        t = _make_poller("❯ hi\n● Hello there")
        await t.poller.tick()

        t.terminal.buffer += "\nMore detail."
        await t.poller.tick()

        assert len(t.surface.created) == 1
        assert t.surface.edits == [("1", "Hello there\nMore detail.", [STOP_ID])]

    @pytest.mark.asyncio
    async def test_chrome_only_change_skips_edit(self):
        t = _make_poller("❯ hi\n● Hello there")
        await t.poller.tick()

        t.terminal.buffer += "\n⏵⏵ accept edits on"
        await t.poller.tick()

        assert t.surface.edits == []
        assert t.state.last_stable_content.endswith("accept edits on")

    @pytest.mark.asyncio
    async def test_tool_calls_are_summarized(self):
        t = _make_poller("❯ go\n● Read(a.ts)\n  ⎿  Read 3 lines\n● Looked at it.")
        await t.poller.tick()

        assert t.surface.created[0][0] == "📖 Read file: `a.ts`\n\nLooked at it."


class TestLiveness:
    """Trivial output while waiting for the first real output."""

    @pytest.mark.asyncio
    async def test_liveness_while_awaiting_first_output(self):
        t = _make_poller("❯ hi\n✻ Thinking…")
        t.state.begin_turn(0.0)

        await t.poller.tick()

        assert t.surface.liveness == 1
        assert t.surface.created == []

    @pytest.mark.asyncio
    async def test_no_liveness_outside_a_turn(self):
        t = _make_poller("❯ hi\n✻ Thinking…")
        await t.poller.tick()

        assert t.surface.liveness == 0


class TestIdleRetirement:
    """The stop control is removed once per idle period and never restored."""

    @pytest.mark.asyncio
    async def test_retirement_sequence(self):
        t = _make_poller("❯ hi\n● Working on it", idle_timeout=5.0)
        await t.poller.tick()

        t.clock.now = 3.0
        await t.poller.tick()
        assert t.surface.edits == []

        t.clock.now = 6.0
        await t.poller.tick()
        assert t.surface.edits == [("1", "Working on it", [])]
        assert t.state.interrupt_control_retired

        t.clock.now = 10.0
        await t.poller.tick()
        assert len(t.surface.edits) == 1

        # New content re-arms retirement but does not bring the control back
        t.clock.now = 11.0
        t.terminal.buffer += "\nStill going."
        await t.poller.tick()
        assert t.surface.edits[-1] == ("1", "Working on it\nStill going.", [])
        assert not t.state.interrupt_control_retired

        t.clock.now = 20.0
        await t.poller.tick()
        assert len(t.surface.edits) == 2
        assert t.state.interrupt_control_retired

    @pytest.mark.asyncio
    async def test_other_controls_preserved(self):
        t = _make_poller("❯ hi\n● Working", idle_timeout=5.0)
        await t.poller.tick()
        extra = Control("retry:c1", "Retry")
        t.state.in_flight.controls.append(extra)

        t.clock.now = 6.0
        await t.poller.tick()

        assert t.surface.edits == [("1", "Working", ["retry:c1"])]

    @pytest.mark.asyncio
    async def test_new_turn_restores_control(self):
        t = _make_poller("❯ hi\n● Working", idle_timeout=5.0)
        await t.poller.tick()
        t.clock.now = 6.0
        await t.poller.tick()

        t.state.begin_turn(7.0)
        t.terminal.buffer += "\n❯ next\n● New answer"
        await t.poller.tick()

        assert t.surface.created[-1] == ("New answer", [STOP_ID])

    @pytest.mark.asyncio
    async def test_failed_retirement_is_retried(self):
        t = _make_poller("❯ hi\n● Working", idle_timeout=5.0)
        await t.poller.tick()

        t.surface.fail = True
        t.clock.now = 6.0
        await t.poller.tick()
        assert not t.state.interrupt_control_retired

        t.surface.fail = False
        t.clock.now = 7.0
        await t.poller.tick()
        assert t.state.interrupt_control_retired
        assert t.surface.edits == [("1", "Working", [])]


class TestSplitting:
    """Output longer than the limit is finalized into chunks."""

    @pytest.mark.asyncio
    async def test_long_output_split_into_chunks(self):
        body = _long_reply(50)
        t = _make_poller("❯ go\n● " + body)

        await t.poller.tick()

        assert len(t.surface.created) == 2
        first, second = t.surface.created
        assert first[1] == []
        assert second[1] == [STOP_ID]
        assert all(len(content) <= 1950 for content, _ in t.surface.created)
        assert first[0] + "\n" + second[0] == body
        assert t.state.turn_emitted_offset == len(first[0]) + 1
        assert t.state.in_flight_text == second[0]

    @pytest.mark.asyncio
    async def test_remainder_is_edited_in_place(self):
        t = _make_poller("❯ go\n● " + _long_reply(50))
        await t.poller.tick()
        offset = t.state.turn_emitted_offset

        t.terminal.buffer += "\n" + _long_reply(5, start=50)
        await t.poller.tick()

        assert len(t.surface.created) == 2
        assert t.surface.edits[-1][0] == "2"
        assert t.surface.edits[-1][1].endswith("row 054 " + "x" * 60)
        assert t.state.turn_emitted_offset == offset

    @pytest.mark.asyncio
    async def test_in_flight_message_becomes_first_chunk(self):
        t = _make_poller("❯ go\n● Short start")
        await t.poller.tick()

        t.terminal.buffer = "❯ go\n● Short start\n" + _long_reply(40)
        await t.poller.tick()

        # Message 1 is finalized without the control, message 2 holds the tail
        assert t.surface.edits[0][0] == "1"
        assert t.surface.edits[0][2] == []
        assert t.surface.created[-1][1] == [STOP_ID]
        assert len(t.surface.created) == 2

    @pytest.mark.asyncio
    async def test_no_control_on_fresh_message_after_removal(self):
        t = _make_poller("❯ go\n● Start", idle_timeout=5.0)
        await t.poller.tick()
        t.clock.now = 6.0
        await t.poller.tick()

        t.clock.now = 7.0
        t.terminal.buffer = "❯ go\n● Start\n" + _long_reply(40)
        await t.poller.tick()

        assert t.surface.created[-1][1] == []


class TestFailures:
    """Transient surface failures roll back; dead sessions terminate."""

    @pytest.mark.asyncio
    async def test_surface_failure_rolls_back_change_detection(self):
        t = _make_poller("❯ hi\n● Hello")
        t.surface.fail = True

        assert await t.poller.tick()
        assert t.surface.created == []
        assert t.state.last_stable_content == ""

        t.surface.fail = False
        await t.poller.tick()
        assert t.surface.created == [("Hello", [STOP_ID])]

    @pytest.mark.asyncio
    async def test_edit_failure_keeps_previous_text(self):
        t = _make_poller("❯ hi\n● Hello")
        await t.poller.tick()
        stable = t.state.last_stable_content

        t.surface.fail = True
        t.terminal.buffer += "\nworld"
        await t.poller.tick()

        assert t.state.last_stable_content == stable
        assert t.state.in_flight_text == "Hello"

    @pytest.mark.asyncio
    async def test_session_gone_terminates_once(self):
        on_terminated = []
        t = _make_poller("❯ hi", on_terminated=on_terminated.append)
        t.terminal.alive = False

        assert not await t.poller.tick()
        assert not await t.poller.tick()

        assert t.surface.notices == [SESSION_ENDED_NOTICE]
        assert on_terminated == ["c1"]
        assert t.poller.terminated

    @pytest.mark.asyncio
    async def test_capture_not_found_terminates(self):
        t = _make_poller("❯ hi")
        t.terminal.capture_error = SessionNotFoundError("claude-c1")

        assert not await t.poller.tick()
        assert t.surface.notices == [SESSION_ENDED_NOTICE]

    @pytest.mark.asyncio
    async def test_transient_capture_error_keeps_polling(self):
        t = _make_poller("❯ hi")
        t.terminal.capture_error = TmuxCommandError(["tmux"], 1, "busy")

        assert await t.poller.tick()
        assert t.surface.notices == []
        assert not t.poller.terminated

    @pytest.mark.asyncio
    async def test_stale_delivery_after_new_turn_is_dropped(self):
        t = _make_poller("❯ hi\n● Old turn output")
        t.surface.before_create = lambda: t.state.begin_turn(1.0)

        await t.poller.tick()

        assert t.state.in_flight is None
        assert t.state.awaiting_first_output


class TestSideChannel:
    """Marker detection and per-source dedupe."""

    @pytest.mark.asyncio
    async def test_request_prompted_once(self):
        handler = AsyncMock()
        t = _make_poller(
            '❯ install\n● I need a skill.\n[SKILL_REQUEST: source="gh:a/b" scope="user"]',
            on_request=handler,
        )
        await t.poller.tick()
        t.terminal.buffer += "\nWaiting."
        await t.poller.tick()

        handler.assert_awaited_once()
        request = handler.await_args[0][0]
        assert request.source == "gh:a/b"
        assert request.fields["scope"] == "user"
        assert request.conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_marker_from_previous_turn_ignored(self):
        handler = AsyncMock()
        t = _make_poller(
            '❯ first\n[SKILL_REQUEST: source="old"]\n❯ second\n● ok', on_request=handler
        )
        await t.poller.tick()

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_marker_not_repeated_before_prompt_echo(self):
        handler = AsyncMock()
        t = _make_poller('❯ install\n● Need it.\n[SKILL_REQUEST: source="gh:a/b"]', on_request=handler)
        await t.poller.tick()

        # Next message dispatched; the terminal has not echoed it yet
        t.state.begin_turn(1.0)
        t.terminal.buffer += "\n✻ Thinking…"
        await t.poller.tick()
        assert handler.await_count == 1

        t.terminal.buffer += '\n❯ again\n● Still need it.\n[SKILL_REQUEST: source="gh:a/b"]'
        await t.poller.tick()
        assert handler.await_count == 2
        assert t.state.carried_request_sources == set()

    @pytest.mark.asyncio
    async def test_default_handler_sends_notice(self):
        t = _make_poller('❯ x\n● ok\n[SKILL_REQUEST: source="gh:a/b"]')
        await t.poller.tick()

        assert len(t.surface.notices) == 1
        assert "gh:a/b" in t.surface.notices[0]

    @pytest.mark.asyncio
    async def test_keyword_filter(self):
        handler = AsyncMock()
        t = _make_poller(
            '❯ x\n● ok\n[OTHER: source="a"]', on_request=handler, request_keywords=["SKILL_REQUEST"]
        )
        await t.poller.tick()

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_file_edits_recorded(self):
        t = _make_poller("❯ go\n● Edit(src/app.py)\n● Write(README.md)\n● Done.")
        await t.poller.tick()

        assert t.stats.get("c1").files_edited == ["src/app.py", "README.md"]


# ---------------------------------------------------------------------------
# PollerTask
# ---------------------------------------------------------------------------


class TestPollerTask:
    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self):
        ticks = []

        async def tick():
            ticks.append(1)
            return True

        task = PollerTask("t", 0.001, tick)
        task.start()
        while len(ticks) < 3:
            await asyncio.sleep(0.001)
        task.stop()
        await task.wait()

        assert not task.running

    @pytest.mark.asyncio
    async def test_false_return_ends_loop(self):
        tick = AsyncMock(return_value=False)
        task = PollerTask("t", 0.001, tick)
        task.start()
        await asyncio.wait_for(task.wait(), timeout=1.0)

        tick.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exception_does_not_stop_loop(self):
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return len(calls) < 3

        task = PollerTask("t", 0.001, tick)
        task.start()
        await asyncio.wait_for(task.wait(), timeout=1.0)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_stop_does_not_cancel_running_tick(self):
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def tick():
            started.set()
            await release.wait()
            finished.append(1)
            return True

        task = PollerTask("t", 0.001, tick)
        task.start()
        await asyncio.wait_for(started.wait(), timeout=1.0)
        task.stop()
        release.set()
        await asyncio.wait_for(task.wait(), timeout=1.0)

        assert finished == [1]


# ---------------------------------------------------------------------------
# DeliveryScheduler
# ---------------------------------------------------------------------------


@pytest.fixture
def scheduler_env():
    terminal = FakeTerminal("❯ old question\n● Old answer")
    surface = FakeSurface()
    clock = FakeClock(100.0)
    config = RelayConfig(poll_interval=60.0, allowed_users=[])
    scheduler = DeliveryScheduler(terminal, surface, config, clock=clock)
    return SimpleNamespace(scheduler=scheduler, terminal=terminal, surface=surface, clock=clock)


class TestDeliveryScheduler:
    @pytest.mark.asyncio
    async def test_start_poller_takes_baseline(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")

        state = env.scheduler.registry.get("c1")
        assert state.last_stable_content == "❯ old question\n● Old answer"
        assert env.scheduler.is_polling("c1")

        # Existing scrollback is not replayed
        await env.scheduler.get_poller("c1").tick()
        assert env.surface.created == []

        await env.scheduler.stop_all()
        assert not env.scheduler.is_polling("c1")

    @pytest.mark.asyncio
    async def test_stop_poller(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")
        task = env.scheduler.poller_task("c1")

        assert env.scheduler.stop_poller("c1")
        assert "c1" not in env.scheduler.registry
        assert not env.scheduler.stop_poller("c1")
        await task.wait()

    @pytest.mark.asyncio
    async def test_dispatch_starts_new_turn(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")

        assert await env.scheduler.dispatch_user_message("c1", "u1", "fix the bug")

        assert env.terminal.sent == [("c1", "fix the bug")]
        state = env.scheduler.registry.get("c1")
        assert state.awaiting_first_output
        assert state.turn == 1
        assert env.scheduler.stats.get("c1").message_count == 1
        await env.scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_dispatch_then_output_flows(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")
        await env.scheduler.dispatch_user_message("c1", "u1", "fix the bug")

        env.terminal.buffer += "\n❯ fix the bug\n\n● Done, fixed it."
        await env.scheduler.get_poller("c1").tick()

        assert env.surface.created == [("Done, fixed it.", [STOP_ID])]
        await env.scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_dispatch_rejections(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")

        assert not await env.scheduler.dispatch_user_message("c1", "u1", "   ")
        assert await env.scheduler.dispatch_user_message("c1", "u1", "first")
        assert not await env.scheduler.dispatch_user_message("c1", "u1", "too soon")
        assert not await env.scheduler.dispatch_user_message("nope", "u2", "no poller")

        env.clock.now += 5
        assert await env.scheduler.dispatch_user_message("c1", "u1", "later")
        assert [text for _, text in env.terminal.sent] == ["first", "later"]
        await env.scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_dispatch_respects_allowlist(self):
        terminal = FakeTerminal()
        scheduler = DeliveryScheduler(
            terminal, FakeSurface(), RelayConfig(poll_interval=60.0, allowed_users=["u1"])
        )
        await scheduler.start_poller("c1")

        assert not await scheduler.dispatch_user_message("c1", "intruder", "hi")
        assert await scheduler.dispatch_user_message("c1", "u1", "hi")
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_dispatch_terminal_error(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")
        env.terminal.send_error = SessionNotFoundError("claude-c1")

        assert not await env.scheduler.dispatch_user_message("c1", "u1", "hi")
        await env.scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_request_interrupt(self, scheduler_env):
        env = scheduler_env
        assert await env.scheduler.request_interrupt("c1")
        assert env.terminal.interrupts == 1

        env.terminal.send_error = TmuxCommandError(["tmux"], 1)
        assert not await env.scheduler.request_interrupt("c1")

    @pytest.mark.asyncio
    async def test_snapshot(self, scheduler_env):
        env = scheduler_env
        env.terminal.buffer = "\x1b[38;5;196merror\x1b[0m\n" + "─" * 20 + "\n❯ "

        block = await env.scheduler.snapshot("c1")

        assert block == "```ansi\n\x1b[31merror\x1b[0m\n```"
        assert env.terminal.captured_lines == [100]

    @pytest.mark.asyncio
    async def test_snapshot_line_count_clamped(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.snapshot("c1", 5000)
        assert env.terminal.captured_lines == [1000]

    @pytest.mark.asyncio
    async def test_terminated_session_is_torn_down(self, scheduler_env):
        env = scheduler_env
        await env.scheduler.start_poller("c1")
        task = env.scheduler.poller_task("c1")
        env.terminal.alive = False

        assert not await env.scheduler.get_poller("c1").tick()

        assert "c1" not in env.scheduler.registry
        assert env.surface.notices == [SESSION_ENDED_NOTICE]
        assert not env.scheduler.is_polling("c1")
        await task.wait()

    @pytest.mark.asyncio
    async def test_schedulers_do_not_share_state(self):
        one = DeliveryScheduler(FakeTerminal(), FakeSurface(), RelayConfig(poll_interval=60.0))
        two = DeliveryScheduler(FakeTerminal(), FakeSurface(), RelayConfig(poll_interval=60.0))
        await one.start_poller("c1")

        assert "c1" in one.registry
        assert "c1" not in two.registry
        await one.stop_all()

    @pytest.mark.asyncio
    async def test_poller_runs_on_the_loop(self):
        terminal = FakeTerminal("❯ hi")
        surface = FakeSurface()
        scheduler = DeliveryScheduler(terminal, surface, RelayConfig(poll_interval=0.001))
        await scheduler.start_poller("c1")

        terminal.buffer += "\n● Streaming reply"
        for _ in range(1000):
            if surface.created:
                break
            await asyncio.sleep(0.001)
        await scheduler.stop_all()

        assert surface.created == [("Streaming reply", [STOP_ID])]

    @pytest.mark.asyncio
    async def test_verbose_writes_debug_trace(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_TMUXRELAY_LOG_DIR, str(tmp_path / "logs"))
        paths = Paths(working_dir=tmp_path)
        terminal = FakeTerminal("❯ hi")
        scheduler = DeliveryScheduler(
            terminal, FakeSurface(), RelayConfig(poll_interval=60.0, verbose=True), paths=paths
        )
        await scheduler.start_poller("c1")

        terminal.buffer += "\n● Reply text"
        await scheduler.get_poller("c1").tick()
        await scheduler.stop_all()

        lines = paths.debug_log_file("c1").read_text().splitlines()
        assert [json.loads(line)["event"] for line in lines] == [
            "poller_start",
            "content_changed",
            "message_created",
        ]
