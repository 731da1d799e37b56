"""
Notification bus at the edge of the world store.

Event types:
  - world.committed  : a tick or player action produced a new snapshot
  - tick.skipped     : a tick was abandoned (overlap, timeout)
  - player.notice    : something a single player should hear about
                       (bailout offer, liquidation, leaked intel, companion level)

World events go to every subscriber; player notices only to that player's queue.
Listeners registered with ``on`` are called synchronously after the store lock
is released.
"""
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from logger import logs

BROADCAST = "*"


class EventType(str, Enum):
    WORLD_COMMITTED = "world.committed"
    TICK_SKIPPED = "tick.skipped"
    PLAYER_NOTICE = "player.notice"


class BusEvent(BaseModel):
    event_id: str
    event_type: EventType
    recipient: str = BROADCAST
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


Listener = Callable[[BusEvent], None]


class NotificationBus:
    """Thread-safe: the tick thread and action threads emit concurrently."""

    def __init__(self, max_queue_size: int = 200):
        self._lock = threading.Lock()
        self._event_counter = 0
        self._queues: Dict[str, Deque[BusEvent]] = {}
        # events ever queued per recipient; drain positions count from here
        self._emitted: Dict[str, int] = {}
        self._listeners: Dict[EventType, List[Listener]] = {}
        self._max_queue_size = max_queue_size

    def _next_id(self) -> str:
        self._event_counter += 1
        return f"evt-{self._event_counter}"

    def emit(self, event_type: EventType, data: Dict[str, Any], recipient: str = BROADCAST) -> BusEvent:
        with self._lock:
            event = BusEvent(
                event_id=self._next_id(),
                event_type=event_type,
                recipient=recipient,
                data=data,
            )
            q = self._queues.setdefault(recipient, deque(maxlen=self._max_queue_size))
            q.append(event)
            self._emitted[recipient] = self._emitted.get(recipient, 0) + 1
            listeners = list(self._listeners.get(event_type, []))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logs.exception(f"Listener for {event_type.value} failed")
        return event

    def on(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            subs = self._listeners.get(event_type, [])
            if listener in subs:
                subs.remove(listener)

    def drain(self, recipient: str, from_pos: int = 0) -> Tuple[List[BusEvent], int]:
        """
        Events for ``recipient`` from absolute position ``from_pos``. Returns (events, new_position).

        Positions keep counting after the bounded queue starts dropping old
        events, so a reader that fell behind gets what is still queued.
        """
        with self._lock:
            q = self._queues.get(recipient, deque())
            total = self._emitted.get(recipient, 0)
            start = max(from_pos - (total - len(q)), 0)
            return list(q)[start:], total

    def latest(self, event_type: EventType, recipient: str = BROADCAST) -> Optional[BusEvent]:
        with self._lock:
            for event in reversed(self._queues.get(recipient, deque())):
                if event.event_type == event_type:
                    return event
        return None

    def stats(self) -> dict:
        with self._lock:
            return {
                "total_events": self._event_counter,
                "listeners": {k.value: len(v) for k, v in self._listeners.items() if v},
                "queue_sizes": {k: len(q) for k, q in self._queues.items() if q},
            }
