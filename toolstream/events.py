"""Application-level events and the subscriber-list emitter.

Events are delivered synchronously on the thread that emits them, which
is always the main (ticking) thread. Subscribers run in registration
order and errors are isolated -- one broken subscriber never stops the
tick or starves the others.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from toolstream.api.models import TokenUsage, ToolCall
    from toolstream.tools.confirmation import ConfirmationRequest

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TEXT_CHUNK = "text_chunk"
    TEXT_COMPLETE = "text_complete"
    TOOL_CALL = "tool_call"
    TURN_COMPLETE = "turn_complete"
    ERROR = "error"
    USAGE = "usage"
    CONFIRMATION_NEEDED = "confirmation_needed"


@dataclass
class AgentEvent:
    """A typed event emitted to the host."""

    type: EventType
    text: str = ""
    tool_call: ToolCall | None = None
    usage: TokenUsage | None = None
    error: Exception | None = None
    stop_reason: str = ""
    confirmation: ConfirmationRequest | None = None
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[AgentEvent], None]


class EventEmitter:
    """Ordered subscriber lists keyed by event type."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def on(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[EventType(event_type)].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, _name(handler))

    def on_any(self, handler: EventHandler) -> None:
        """Register a handler that receives every event."""
        self._wildcard.append(handler)

    def off(self, event_type: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(EventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: AgentEvent) -> None:
        """Deliver an event to type subscribers, then wildcard subscribers."""
        for handler in [*self._handlers.get(event.type, []), *self._wildcard]:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s failed for event %s", _name(handler), event.type)

    def subscriber_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values()) + len(self._wildcard)
        return len(self._handlers.get(EventType(event_type), []))


def _name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", repr(handler))
