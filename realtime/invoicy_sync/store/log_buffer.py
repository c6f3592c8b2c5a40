"""
Bounded buffer for append-only log streams.

Keeps the newest ``capacity`` entries of a log table, newest first.
Log entries are immutable, so the only way out of the buffer is
eviction from the tail.

Invariants:
    - len(buffer) <= capacity after every operation
    - The buffer holds the most recent entries; the oldest go first
    - An entry id appears at most once
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

from ..models import Entity

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

DEFAULT_CAPACITY = 100


class BoundedLogBuffer(Generic[E]):
    """Newest-first, capacity-limited sequence of log entries.

    Example:
        >>> buf = BoundedLogBuffer(capacity=2)
        >>> for entry in (a, b, c):
        ...     buf.append(entry)
        >>> [e.id for e in buf.snapshot()]
        ['c', 'b']
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, name: str = "") -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._entries: deque[E] = deque(maxlen=capacity)
        self._ids: set[str] = set()
        self._loaded = False
        self._evicted = 0

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def evicted_count(self) -> int:
        """Entries dropped off the tail since creation."""
        return self._evicted

    def append(self, entry: E) -> bool:
        """Prepend an entry, evicting the oldest when full.

        Returns:
            False if the entry was already buffered (redelivery)
        """
        if entry.id in self._ids:
            return False
        if len(self._entries) == self.capacity:
            oldest = self._entries.pop()
            self._ids.discard(oldest.id)
            self._evicted += 1
        self._entries.appendleft(entry)
        self._ids.add(entry.id)
        return True

    def load(self, initial: Iterable[E]) -> None:
        """Replace contents with a newest-first batch, truncated to capacity.

        Entries appended before the first load are newer than anything
        in the batch and stay in front of it.
        """
        live = list(self._entries) if not self._loaded else []
        merged: list[E] = []
        seen: set[str] = set()
        for entry in (*live, *initial):
            if entry.id in seen:
                continue
            seen.add(entry.id)
            merged.append(entry)
            if len(merged) == self.capacity:
                break

        if live:
            logger.debug(
                "Merged initial log batch with live entries",
                extra={"buffer": self.name, "live": len(live), "size": len(merged)},
            )

        self._entries = deque(merged, maxlen=self.capacity)
        self._ids = seen
        self._loaded = True

    def reset(self) -> None:
        self._entries.clear()
        self._ids.clear()
        self._loaded = False

    def snapshot(self) -> tuple[E, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[E]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"BoundedLogBuffer({self.name!r}, size={len(self)}, capacity={self.capacity})"
