"""Inbound event queue with same-category batch polling."""

import threading
from collections import deque

from loguru import logger

from parlor.bus.events import Event


class EventQueue:
    """
    FIFO of platform and internal events.

    Producers may push from any thread. The agent loop drains it with
    poll_batch(), which never blocks.
    """

    def __init__(self):
        self._events: deque[Event] = deque()
        self._lock = threading.RLock()

    def push(self, event: Event) -> None:
        """Append an event to the tail of the queue."""
        with self._lock:
            self._events.append(event)
            logger.debug(f"Queued {event.kind} event for channel {event.channel_id} ({len(self._events)} pending)")

    def poll_batch(self) -> list[Event]:
        """
        Remove and return the longest run of same-category events at the head.

        Returns an empty list when the queue is empty.
        """
        with self._lock:
            if not self._events:
                return []
            category = self._events[0].category
            batch: list[Event] = []
            while self._events and self._events[0].category == category:
                batch.append(self._events.popleft())
            return batch

    def is_empty(self) -> bool:
        with self._lock:
            return not self._events

    def size(self) -> int:
        with self._lock:
            return len(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return self.size()
