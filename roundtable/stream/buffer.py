"""Bounded newest-first event ring."""
from collections import deque
from typing import Iterable

from roundtable.core.events import Event

MAX_EVENTS = 200


class EventBuffer:
    """Newest-first ring of at most ``capacity`` events.

    push() prepends a live event and evicts from the tail (oldest by receipt
    order). seed() appends a newest-first history batch behind whatever is
    already buffered, keeping only what fits.
    """

    def __init__(self, capacity: int = MAX_EVENTS):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._events: deque[Event] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._events)

    def push(self, event: Event) -> None:
        self._events.appendleft(event)

    def seed(self, history: Iterable[Event]) -> int:
        added = 0
        for event in history:
            if len(self._events) >= self.capacity:
                break
            self._events.append(event)
            added += 1
        return added

    def snapshot(self) -> tuple[Event, ...]:
        return tuple(self._events)

    def clear(self) -> None:
        self._events.clear()
