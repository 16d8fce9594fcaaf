"""
Progress broadcaster - one writer, many readers.

Publishing never blocks: every subscription owns a bounded buffer and a
slow reader loses its oldest buffered events (counted in `dropped`).
Events carry a sequence number that increases across the broadcaster, so
readers can see both order and gaps.
"""
import json
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from crm_migrator.core.logging_config import migration_logger as logger


class EventType(str, Enum):
    """Progress event names."""

    CONNECTED = "connected"
    VALIDATION_WARNING = "validation:warning"
    ENTITY_START = "entity:start"
    ENTITY_PROGRESS = "entity:progress"
    ENTITY_COMPLETE = "entity:complete"
    MIGRATION_COMPLETE = "migration:complete"
    MIGRATION_ERROR = "migration:error"


TERMINAL_EVENTS = {EventType.MIGRATION_COMPLETE, EventType.MIGRATION_ERROR}


@dataclass(frozen=True)
class ProgressEvent:
    """One published event."""

    type: EventType
    sequence: int
    session_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"sequence": self.sequence, "session_id": self.session_id, **self.data}


def format_sse(event: ProgressEvent) -> str:
    """Render an event in text/event-stream wire format."""
    return f"event: {event.type.value}\ndata: {json.dumps(event.to_dict(), default=str)}\n\n"


class Subscription:
    """A reader's bounded view of the event stream."""

    def __init__(self, broadcaster: "ProgressBroadcaster", buffer_size: int):
        self._broadcaster = broadcaster
        self._buffer: deque = deque()
        self._buffer_size = buffer_size
        self._condition = threading.Condition()
        self.dropped = 0
        self.closed = False

    def _offer(self, event: ProgressEvent) -> None:
        with self._condition:
            if self.closed:
                return
            if len(self._buffer) >= self._buffer_size:
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(event)
            self._condition.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """
        Next event, waiting up to timeout seconds.

        Returns:
            The event, or None on timeout or when closed and drained
        """
        with self._condition:
            self._condition.wait_for(lambda: self._buffer or self.closed, timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> List[ProgressEvent]:
        """All buffered events, without waiting."""
        with self._condition:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def __iter__(self) -> Iterator[ProgressEvent]:
        """Events until a terminal event or close."""
        while True:
            event = self.get()
            if event is None:
                return
            yield event
            if event.terminal:
                return

    def close(self) -> None:
        with self._condition:
            self.closed = True
            self._condition.notify_all()
        self._broadcaster.unsubscribe(self)


class ProgressBroadcaster:
    """Fan-out of progress events to any number of subscriptions."""

    def __init__(self, buffer_size: int = 1000):
        self.buffer_size = buffer_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self.session_id: Optional[str] = None
        self.last_event: Optional[ProgressEvent] = None

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def subscribe(self) -> Subscription:
        """Register a reader; it receives `connected` first."""
        subscription = Subscription(self, self.buffer_size)
        with self._lock:
            connected = ProgressEvent(
                EventType.CONNECTED, self._next_sequence(), self.session_id, {"message": "Connected to migration progress"}
            )
            subscription._offer(connected)
            self._subscriptions.append(subscription)
        logger.debug(f"Progress subscriber added ({len(self._subscriptions)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> ProgressEvent:
        """
        Deliver an event to every subscription without blocking.

        Args:
            event_type: One of EventType (value or member)
            data: JSON-serializable payload

        Raises:
            ValueError: For an unknown event name
        """
        kind = EventType(event_type)
        with self._lock:
            event = ProgressEvent(kind, self._next_sequence(), self.session_id, dict(data or {}))
            self.last_event = event
            subscriptions = list(self._subscriptions)
            for subscription in subscriptions:
                subscription._offer(event)
        return event
