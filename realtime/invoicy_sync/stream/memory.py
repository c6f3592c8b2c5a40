"""
In-memory change feed implementation.

This module provides an in-process change feed backend for:
- Unit and integration tests
- Local development without a Kafka cluster

Invariants:
    - Events published before a stream opens are never delivered to it
    - Each open stream receives events in publish order
    - Closing a stream wakes its iterator and detaches it from the feed

How to change safely:
    - Keep interface compatible with the ChangeFeed protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping
from typing import Any, Dict, List, Optional

from .base import (
    ChangeEvent,
    ChangeKind,
    FeedConnectionError,
    RowFilter,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryChangeStream:
    """One open stream on an InMemoryChangeFeed."""

    def __init__(self, feed: InMemoryChangeFeed, stream_id: int, source: str) -> None:
        self.source = source
        self.stream_id = stream_id
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSED:
                break
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        self._feed._detach(self)
        logger.debug(
            "In-memory stream closed",
            extra={"source": self.source, "stream_id": self.stream_id},
        )


class InMemoryChangeFeed:
    """In-memory implementation of ChangeFeed.

    publish() fans an event out to every open stream of its table.

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.connect()
        >>> stream = await feed.open_stream("invoices")
        >>> feed.publish("invoices", ChangeKind.INSERT, {"id": "1"})
    """

    def __init__(self) -> None:
        self._streams: Dict[str, List[InMemoryChangeStream]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._connected = False
        self._pending_failures: Dict[Optional[str], Exception] = {}
        self.published: List[ChangeEvent] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryChangeFeed connected")

    async def close(self) -> None:
        """Close every open stream."""
        for streams in list(self._streams.values()):
            for stream in list(streams):
                await stream.close()
        self._streams.clear()
        self._connected = False
        logger.debug("InMemoryChangeFeed closed")

    async def open_stream(
        self,
        source: str,
        row_filter: RowFilter | None = None,
    ) -> InMemoryChangeStream:
        """Open a stream for a table.

        The row filter is applied by the subscriber, not here.

        Raises:
            FeedConnectionError: If not connected or a failure was injected
        """
        if not self._connected:
            raise FeedConnectionError("Not connected")

        failure = self._pending_failures.pop(source, None) or self._pending_failures.pop(None, None)
        if failure is not None:
            raise failure

        stream = InMemoryChangeStream(self, next(self._ids), source)
        self._streams[source].append(stream)
        logger.debug(
            "In-memory stream opened",
            extra={"source": source, "stream_id": stream.stream_id, "filter": str(row_filter)},
        )
        return stream

    def _detach(self, stream: InMemoryChangeStream) -> None:
        streams = self._streams.get(stream.source)
        if streams and stream in streams:
            streams.remove(stream)

    def publish(
        self,
        source: str,
        kind: ChangeKind | str,
        record: Optional[Mapping[str, Any]] = None,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> ChangeEvent:
        """Publish a change to every open stream of a table.

        Returns:
            The published event
        """
        event = ChangeEvent(
            source=source,
            kind=ChangeKind(kind),
            record=record,
            old_record=old_record,
        )
        self.publish_event(event)
        return event

    def publish_event(self, event: ChangeEvent) -> None:
        self.published.append(event)
        for stream in list(self._streams.get(event.source, ())):
            stream._offer(event)

    # Testing helpers

    def inject_failure(self, exception: Exception, source: str | None = None) -> None:
        """Make the next open_stream (for ``source``, or any table) raise."""
        self._pending_failures[source] = exception

    def open_stream_count(self, source: str | None = None) -> int:
        """Number of streams currently open, optionally for one table."""
        if source is not None:
            return len(self._streams.get(source, ()))
        return sum(len(streams) for streams in self._streams.values())
