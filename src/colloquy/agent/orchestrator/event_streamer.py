"""
Event Streamer for per-turn event creation.

Manages event sequence state and stamps each event with the turn
(correlation) id and conversation id before it is published.
"""

from __future__ import annotations

from typing import Any, Optional, TypeVar
from uuid import UUID

from ..domain.events import AgentEvent
from .event_router import EventRouter

E = TypeVar("E", bound=AgentEvent)


class EventStreamer:
    """Creates and publishes events with auto-incrementing sequence numbers.

    Usage:
        streamer = EventStreamer(router, conversation_id=conv.id, turn_id=turn_id)

        streamer.emit(TurnStarted, user_input="Hello")   # sequence = 1
        streamer.emit(TextDelta, text="Hi")              # sequence = 2

        # Reset sequence for a new turn
        streamer.reset(turn_id=next_turn_id)
    """

    def __init__(
        self,
        router: Optional[EventRouter] = None,
        conversation_id: Optional[UUID] = None,
        turn_id: Optional[str] = None,
    ):
        """Initialize the event streamer.

        Args:
            router: Router to publish on (events are only created if None)
            conversation_id: Conversation stamped on every event
            turn_id: Correlation id stamped on every event
        """
        self.router = router
        self.conversation_id = conversation_id
        self.turn_id = turn_id
        self._sequence = 0

    def create_event(self, event_type: type[E], **fields: Any) -> E:
        """Create an event with the next sequence number."""
        self._sequence += 1
        fields.setdefault("conversation_id", self.conversation_id)
        fields.setdefault("turn_id", self.turn_id)
        return event_type(sequence=self._sequence, **fields)

    def emit(self, event_type: type[E], **fields: Any) -> E:
        """Create an event and publish it on the router."""
        event = self.create_event(event_type, **fields)
        if self.router is not None:
            self.router.publish(event)
        return event

    def reset(self, turn_id: Optional[str] = None) -> None:
        """Reset the sequence counter, optionally switching turn id."""
        self._sequence = 0
        self.turn_id = turn_id

    @property
    def sequence(self) -> int:
        """Current sequence value (before next increment)."""
        return self._sequence
