"""Per-conversation output state and its registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from tmuxrelay.relay.surface import MessageHandle

logger = logging.getLogger(__name__)


@dataclass
class ConversationOutputState:
    """Mutable delivery state for one conversation.

    Attributes:
        last_stable_content: Last comparison-form capture, for change detection
        in_flight: Handle of the editable message for the current turn
        in_flight_text: Text last written to ``in_flight``
        turn_accumulated_text: Full formatted text of the current turn
        turn_emitted_offset: Prefix of ``turn_accumulated_text`` already
            finalized into earlier chunks
        awaiting_first_output: Set when a user message is dispatched, cleared
            once real output is delivered
        last_change_timestamp: Clock value of the last content change
        interrupt_control_retired: Idle retirement already happened for the
            current idle period
        interrupt_control_removed: The control was taken off the in-flight
            message this turn and must not come back until the next turn
        pending_request_sources: Side-channel sources already surfaced this turn
        carried_request_sources: Sources surfaced last turn; skipped until the
            turn boundary moves past their markers
        request_boundary: Tail of the history preceding the current turn
        turn: Incremented on every new turn so stale deliveries can be told apart
    """

    last_stable_content: str = ""
    in_flight: Optional[MessageHandle] = None
    in_flight_text: str = ""
    turn_accumulated_text: str = ""
    turn_emitted_offset: int = 0
    awaiting_first_output: bool = False
    last_change_timestamp: float = 0.0
    interrupt_control_retired: bool = False
    interrupt_control_removed: bool = False
    pending_request_sources: Set[str] = field(default_factory=set)
    carried_request_sources: Set[str] = field(default_factory=set)
    request_boundary: str = ""
    turn: int = 0

    def begin_turn(self, now: float) -> None:
        """Reset turn-scoped fields when the user sends a new message."""
        self.in_flight = None
        self.in_flight_text = ""
        self.turn_accumulated_text = ""
        self.turn_emitted_offset = 0
        self.awaiting_first_output = True
        self.last_change_timestamp = now
        self.interrupt_control_retired = False
        self.interrupt_control_removed = False
        # The prompt echo may lag the dispatch, leaving old markers in view
        self.carried_request_sources = set(self.pending_request_sources)
        self.pending_request_sources.clear()
        self.turn += 1


class OutputStateRegistry:
    """Owns the output state of every active conversation."""

    def __init__(self) -> None:
        self._states: Dict[str, ConversationOutputState] = {}

    def get(self, conversation_id: str) -> Optional[ConversationOutputState]:
        return self._states.get(conversation_id)

    def create(self, conversation_id: str, **initial) -> ConversationOutputState:
        """Create (or replace) the state for a conversation."""
        if conversation_id in self._states:
            logger.debug(f"Replacing output state for {conversation_id}")
        state = ConversationOutputState(**initial)
        self._states[conversation_id] = state
        return state

    def remove(self, conversation_id: str) -> Optional[ConversationOutputState]:
        return self._states.pop(conversation_id, None)

    def conversation_ids(self) -> List[str]:
        return list(self._states)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._states

    def __len__(self) -> int:
        return len(self._states)
