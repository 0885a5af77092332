"""Delivery scheduler: polls terminal sessions and streams output to chat.

Each conversation gets a ``ConversationPoller`` driven by its own
``PollerTask``. A tick captures the terminal, runs the text pipeline, and
decides whether to create, edit or split the outgoing message. Ticks of one
conversation never overlap; ticks of different conversations interleave on
the same event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from tmuxrelay.config.models import RelayConfig
from tmuxrelay.core.debug import ConversationDebugLogger
from tmuxrelay.core.exceptions import SessionNotFoundError, TerminalSessionError
from tmuxrelay.core.paths import Paths
from tmuxrelay.pipeline.ansi import render_code_block
from tmuxrelay.pipeline.chrome import strip_chrome
from tmuxrelay.pipeline.formatter import render
from tmuxrelay.pipeline.markers import SideChannelRequest, detect_file_edits, find_requests
from tmuxrelay.pipeline.sanitizer import strip_for_compare, strip_for_display
from tmuxrelay.pipeline.segmenter import segment, split_turn
from tmuxrelay.pipeline.splitter import find_split_point, skip_leading_whitespace
from tmuxrelay.relay.rate_limiter import RateLimiter
from tmuxrelay.relay.state import ConversationOutputState, OutputStateRegistry
from tmuxrelay.relay.stats import StatsRegistry, is_user_allowed
from tmuxrelay.relay.surface import ChatSurface, Control, interrupt_control, is_interrupt
from tmuxrelay.relay.terminal import TerminalSessionManager

__all__ = ["PollerTask", "ConversationPoller", "DeliveryScheduler"]

logger = logging.getLogger(__name__)

SESSION_ENDED_NOTICE = "Session has ended."
MAX_SNAPSHOT_LINES = 1000
# Characters of pre-turn history that identify where the current turn begins
BOUNDARY_TAIL = 200

RequestHandler = Callable[[SideChannelRequest], Awaitable[None]]


class PollerTask:
    """A cancellable repeating task.

    ``tick`` is awaited once per ``interval``; the next tick is scheduled only
    after the previous one completes. ``tick`` returning False ends the loop.
    ``stop()`` wakes the sleeper but never cancels a tick that is running.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable[bool]]):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        self._stopping.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait(self) -> None:
        """Wait for the loop to exit (after ``stop()`` or a final tick)."""
        if self._task is not None:
            await self._task

    async def _sleep(self) -> bool:
        """Sleep one interval; return True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass
        return self._stopping.is_set()

    async def _run(self) -> None:
        while not await self._sleep():
            try:
                keep_going = await self._tick()
            except Exception:
                logger.exception(f"Unexpected error in {self.name}")
                keep_going = True
            if not keep_going:
                break
        logger.debug(f"{self.name} stopped")


@dataclass
class _Delivery:
    """Outcome of writing surface messages for one tick."""

    ok: bool
    stale: bool = False


class ConversationPoller:
    """Per-tick delivery logic for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        state: ConversationOutputState,
        terminal: TerminalSessionManager,
        surface: ChatSurface,
        config: RelayConfig,
        clock: Callable[[], float] = time.monotonic,
        stats: Optional[StatsRegistry] = None,
        debug_logger: Optional[ConversationDebugLogger] = None,
        on_request: Optional[RequestHandler] = None,
        on_terminated: Optional[Callable[[str], None]] = None,
    ):
        self.conversation_id = conversation_id
        self.state = state
        self.terminal = terminal
        self.surface = surface
        self.config = config
        self._clock = clock
        self._stats = stats
        self._debug = debug_logger or ConversationDebugLogger.noop()
        self._on_request = on_request
        self._on_terminated = on_terminated
        self.terminated = False

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Run one poll cycle. Returns False once the session has ended."""
        if self.terminated:
            return False

        cid = self.conversation_id
        state = self.state

        try:
            if not await self.terminal.session_exists(cid):
                await self._terminate()
                return False
            raw = await self.terminal.capture_buffer(cid, self.config.capture_lines)
        except SessionNotFoundError:
            await self._terminate()
            return False
        except TerminalSessionError as e:
            logger.warning(f"Capture failed for {cid}: {e}")
            return True

        now = self._clock()
        compare = strip_for_compare(raw)

        if compare == state.last_stable_content:
            await self._maybe_retire_interrupt(now)
            return True

        previous = state.last_stable_content
        state.last_stable_content = compare
        state.last_change_timestamp = now
        state.interrupt_control_retired = False
        self._debug.content_changed(state.turn, len(compare))

        history, turn_text = split_turn(compare)
        await self._detect_requests(turn_text, history[-BOUNDARY_TAIL:])
        if self._stats is not None:
            self._stats.record_file_edits(cid, detect_file_edits(turn_text))

        formatted = render(segment(strip_chrome(compare)))
        state.turn_accumulated_text = formatted

        if len(formatted) < self.config.min_content_length:
            if state.awaiting_first_output:
                await self._show_liveness()
            return True

        delivery = await self._deliver(formatted)
        if not delivery.ok and not delivery.stale:
            # Forget this capture so the next tick sees a change and retries
            state.last_stable_content = previous
        return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, formatted: str) -> _Delivery:
        state = self.state
        limit = self.config.message_limit

        tail = formatted[state.turn_emitted_offset:]
        while len(tail) > limit:
            cut = find_split_point(
                tail, limit, self.config.split_search_window, self.config.min_split_offset
            )
            result = await self._finalize_chunk(tail[:cut])
            if not result.ok:
                return result
            advance = skip_leading_whitespace(tail, cut)
            state.turn_emitted_offset += advance
            tail = tail[advance:]

        if not tail.strip():
            return _Delivery(ok=True)
        return await self._write_tail(tail)

    def _tail_controls(self) -> List[Control]:
        state = self.state
        controls: List[Control] = []
        if state.in_flight is not None:
            controls = [c for c in state.in_flight.controls if not is_interrupt(c)]
        if not state.interrupt_control_removed:
            controls.append(interrupt_control(self.conversation_id))
        return controls

    async def _finalize_chunk(self, chunk: str) -> _Delivery:
        """Write a full chunk as an immutable message without the stop control."""
        state = self.state
        turn = state.turn
        handle = state.in_flight
        try:
            if handle is None:
                await self.surface.create_message(self.conversation_id, chunk, [])
            else:
                keep = [c for c in handle.controls if not is_interrupt(c)]
                await self.surface.edit_message(handle, chunk, keep)
        except Exception as e:
            self._delivery_failed("finalize", e)
            return _Delivery(ok=False)

        if state.turn != turn:
            return _Delivery(ok=False, stale=True)

        state.in_flight = None
        state.in_flight_text = ""
        state.awaiting_first_output = False
        self._debug.chunk_finalized(turn, len(chunk), state.turn_emitted_offset)
        return _Delivery(ok=True)

    async def _write_tail(self, tail: str) -> _Delivery:
        state = self.state
        turn = state.turn
        handle = state.in_flight
        controls = self._tail_controls()

        if handle is not None and tail == state.in_flight_text and _same_controls(
            handle.controls, controls
        ):
            return _Delivery(ok=True)

        try:
            if handle is None:
                handle = await self.surface.create_message(self.conversation_id, tail, controls)
                created = True
            else:
                handle = await self.surface.edit_message(handle, tail, controls)
                created = False
        except Exception as e:
            self._delivery_failed("write", e)
            return _Delivery(ok=False)

        if state.turn != turn:
            # A new turn started while the surface call was pending
            return _Delivery(ok=False, stale=True)

        state.in_flight = handle
        state.in_flight_text = tail
        state.awaiting_first_output = False
        self._debug.message_written(turn, handle.message_id, len(tail), len(controls), created)
        return _Delivery(ok=True)

    def _delivery_failed(self, stage: str, error: Exception) -> None:
        logger.warning(f"Delivery failed for {self.conversation_id} ({stage}): {error}")
        self._debug.delivery_failed(self.state.turn, stage, error)

    # ------------------------------------------------------------------
    # Idle retirement, liveness, side channel, termination
    # ------------------------------------------------------------------

    async def _maybe_retire_interrupt(self, now: float) -> None:
        state = self.state
        if state.interrupt_control_retired or state.in_flight is None:
            return
        if now - state.last_change_timestamp <= self.config.idle_timeout:
            return

        handle = state.in_flight
        if not any(is_interrupt(c) for c in handle.controls):
            state.interrupt_control_retired = True
            return

        turn = state.turn
        remaining = [c for c in handle.controls if not is_interrupt(c)]
        try:
            handle = await self.surface.edit_message(handle, state.in_flight_text, remaining)
        except Exception as e:
            self._delivery_failed("retire", e)
            return

        if state.turn != turn:
            return
        state.in_flight = handle
        state.interrupt_control_retired = True
        state.interrupt_control_removed = True
        self._debug.interrupt_retired(turn, now - state.last_change_timestamp)

    async def _show_liveness(self) -> None:
        try:
            await self.surface.show_liveness(self.conversation_id)
        except Exception as e:
            logger.debug(f"Liveness signal failed for {self.conversation_id}: {e}")

    async def _detect_requests(self, turn_text: str, boundary: str) -> None:
        state = self.state
        if boundary != state.request_boundary:
            # A new prompt echo moved the turn start; last turn's markers are out of view
            state.carried_request_sources.clear()
            state.request_boundary = boundary
        requests = find_requests(
            turn_text, self.config.request_keywords, conversation_id=self.conversation_id
        )
        for request in requests:
            if request.source in state.pending_request_sources:
                continue
            if request.source in state.carried_request_sources:
                continue
            state.pending_request_sources.add(request.source)
            self._debug.request_detected(state.turn, request)
            try:
                if self._on_request is not None:
                    await self._on_request(request)
                else:
                    await self.surface.send_notice(
                        self.conversation_id,
                        f"{request.keyword} request for `{request.source}` needs confirmation.",
                    )
            except Exception as e:
                logger.warning(f"Request handler failed for {self.conversation_id}: {e}")

    async def _terminate(self) -> None:
        if self.terminated:
            return
        self.terminated = True
        logger.info(f"Terminal session for {self.conversation_id} has ended")
        self._debug.terminated(self.state.turn)
        try:
            await self.surface.send_notice(self.conversation_id, SESSION_ENDED_NOTICE)
        except Exception as e:
            logger.warning(f"Could not send session-ended notice for {self.conversation_id}: {e}")
        if self._on_terminated is not None:
            self._on_terminated(self.conversation_id)


def _same_controls(current: Sequence[Control], wanted: Sequence[Control]) -> bool:
    return [c.custom_id for c in current] == [c.custom_id for c in wanted]


class DeliveryScheduler:
    """Coordinates pollers, output state, rate limiting and stats.

    One scheduler owns one ``OutputStateRegistry``; separate schedulers share
    nothing except the terminal and surface they are given.
    """

    def __init__(
        self,
        terminal: TerminalSessionManager,
        surface: ChatSurface,
        config: Optional[RelayConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_request: Optional[RequestHandler] = None,
        paths: Optional[Paths] = None,
    ):
        self.terminal = terminal
        self.surface = surface
        self.config = config or RelayConfig()
        self.registry = OutputStateRegistry()
        self.rate_limiter = RateLimiter(self.config.rate_limit_seconds, clock)
        self.stats = StatsRegistry()
        self._clock = clock
        self._on_request = on_request
        self._paths = paths
        self._pollers: Dict[str, ConversationPoller] = {}
        self._tasks: Dict[str, PollerTask] = {}

    def _debug_logger(self, conversation_id: str) -> ConversationDebugLogger:
        if not self.config.verbose:
            return ConversationDebugLogger.noop()
        return ConversationDebugLogger.for_conversation(conversation_id, self._paths)

    async def start_poller(self, conversation_id: str) -> ConversationPoller:
        """Start streaming a conversation's terminal output.

        The current buffer is taken as the baseline so existing scrollback is
        not replayed.
        """
        if conversation_id in self._tasks:
            self.stop_poller(conversation_id)

        state = self.registry.create(conversation_id)
        state.last_change_timestamp = self._clock()
        debug = self._debug_logger(conversation_id)

        try:
            initial = await self.terminal.capture_buffer(
                conversation_id, self.config.capture_lines
            )
            state.last_stable_content = strip_for_compare(initial)
        except TerminalSessionError as e:
            logger.warning(f"Initial capture failed for {conversation_id}: {e}")

        poller = ConversationPoller(
            conversation_id,
            state,
            self.terminal,
            self.surface,
            self.config,
            clock=self._clock,
            stats=self.stats,
            debug_logger=debug,
            on_request=self._on_request,
            on_terminated=self._handle_terminated,
        )
        task = PollerTask(f"poller-{conversation_id}", self.config.poll_interval, poller.tick)
        self._pollers[conversation_id] = poller
        self._tasks[conversation_id] = task
        self.stats.get_or_create(conversation_id)
        task.start()

        debug.poller_started(self.config.poll_interval)
        logger.debug(f"Started poller for {conversation_id}")
        return poller

    def stop_poller(self, conversation_id: str) -> bool:
        """Stop a conversation's poller and drop its state."""
        task = self._tasks.pop(conversation_id, None)
        self._pollers.pop(conversation_id, None)
        self.registry.remove(conversation_id)
        if task is None:
            return False
        task.stop()
        logger.debug(f"Stopped poller for {conversation_id}")
        return True

    def is_polling(self, conversation_id: str) -> bool:
        task = self._tasks.get(conversation_id)
        return task is not None and task.running

    def get_poller(self, conversation_id: str) -> Optional[ConversationPoller]:
        return self._pollers.get(conversation_id)

    def poller_task(self, conversation_id: str) -> Optional[PollerTask]:
        """Task driving a conversation's poller; ``wait()`` returns once it ends."""
        return self._tasks.get(conversation_id)

    def _handle_terminated(self, conversation_id: str) -> None:
        self.stop_poller(conversation_id)
        self.stats.remove(conversation_id)

    async def dispatch_user_message(self, conversation_id: str, user_id: str, text: str) -> bool:
        """Send a user's message to the terminal and start a new turn.

        Returns False when the message was not sent (user not allowed, blank
        text, rate limited, no active poller, or the terminal refused it).
        """
        if not is_user_allowed(user_id, self.config.allowed_users):
            logger.info(f"Ignoring message from unauthorized user {user_id}")
            return False
        if not text.strip():
            return False
        if not self.rate_limiter.allow(user_id):
            logger.debug(f"Rate limited message from {user_id}")
            return False

        state = self.registry.get(conversation_id)
        if state is None:
            logger.warning(f"No active poller for {conversation_id}")
            return False

        state.begin_turn(self._clock())
        try:
            await self.terminal.send_keystrokes(conversation_id, text)
        except TerminalSessionError as e:
            logger.warning(f"Could not send message to {conversation_id}: {e}")
            return False

        self.stats.record_message(conversation_id)
        return True

    async def request_interrupt(self, conversation_id: str) -> bool:
        """Send the interrupt keystroke. Does not stop the poller."""
        try:
            await self.terminal.send_interrupt(conversation_id)
        except TerminalSessionError as e:
            logger.warning(f"Could not interrupt {conversation_id}: {e}")
            return False
        return True

    async def snapshot(self, conversation_id: str, lines: Optional[int] = None) -> str:
        """Return recent raw output as an ``ansi`` code block."""
        count = lines or self.config.snapshot_lines
        count = max(1, min(count, MAX_SNAPSHOT_LINES))
        raw = await self.terminal.capture_buffer(conversation_id, count)
        cleaned = strip_chrome(strip_for_display(raw))
        return render_code_block(cleaned, self.config.message_ceiling)

    async def stop_all(self) -> None:
        """Stop every poller and wait for running ticks to finish."""
        tasks = list(self._tasks.values())
        for conversation_id in list(self._tasks):
            self.stop_poller(conversation_id)
        for task in tasks:
            await task.wait()
