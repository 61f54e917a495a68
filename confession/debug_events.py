"""Live tracing for call sessions and invitation controllers.

A ``DebugBroadcaster`` records what one room or controller does: state
transitions, signals published and received, ICE candidates, chat and
errors.  The admin WebSocket subscribes to it; each subscriber gets its
own bounded queue so a slow reader only loses its own oldest events.

History is bounded too.  Payloads never carry SDP bodies or chat text,
only their shape (type, length, sender).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import TypedDict

log = logging.getLogger("confession.debug_events")


class DebugEventType(str, Enum):
    TRANSITION = "transition"
    SIGNAL_IN = "signal_in"
    SIGNAL_OUT = "signal_out"
    ICE = "ice"
    CHAT = "chat"
    ERROR = "error"


class DebugEvent(TypedDict):
    type: str
    timestamp: float
    session_id: str
    state: str
    data: dict


class DebugBroadcaster:
    """Fan-out of one session's events to any number of queues."""

    def __init__(self, session_id: str, max_queue: int = 200, max_history: int = 1000) -> None:
        self._session_id = session_id
        self._max_queue = max_queue
        self._subscribers: list[asyncio.Queue[DebugEvent]] = []
        self._history: deque[DebugEvent] = deque(maxlen=max_history)
        self._dropped = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def event_log(self) -> list[DebugEvent]:
        """Recorded events, oldest first."""
        return list(self._history)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def dropped(self) -> int:
        """Events discarded from full subscriber queues."""
        return self._dropped

    def subscribe(self, replay: bool = False) -> asyncio.Queue[DebugEvent]:
        """Open a queue for new events, optionally pre-filled with history."""
        q: asyncio.Queue[DebugEvent] = asyncio.Queue(maxsize=self._max_queue)
        if replay:
            for event in list(self._history)[-self._max_queue:]:
                q.put_nowait(event)
        self._subscribers.append(q)
        log.info("Debug subscriber joined %s (%d open)", self._session_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[DebugEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)
            log.info("Debug subscriber left %s (%d open)", self._session_id, len(self._subscribers))

    def emit(self, event_type: DebugEventType | str, state: str, data: dict) -> DebugEvent:
        kind = DebugEventType(event_type)
        event: DebugEvent = {
            "type": kind.value,
            "timestamp": time.time(),
            "session_id": self._session_id,
            "state": state,
            "data": data,
        }
        self._history.append(event)
        for q in self._subscribers:
            if q.full():
                q.get_nowait()
                self._dropped += 1
            q.put_nowait(event)
        return event
