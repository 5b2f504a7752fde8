"""Bounded event log shown in the dashboard footer."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterator

from .models import EventEntry


class EventLog:
    """FIFO ring buffer of :class:`EventEntry`.

    Appends are O(1); once ``capacity`` is reached the oldest entry is
    evicted. The log is not synchronized on its own, it lives inside
    ``DashboardState`` and is only touched under that lock.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: Deque[EventEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: EventEntry) -> None:
        self._entries.append(entry)

    def recent(self, count: int) -> list[EventEntry]:
        """Return the newest ``count`` entries, oldest first."""
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[EventEntry]:
        return iter(list(self._entries))
