"""
Base protocol and types for the change feed abstraction.

This module defines the ChangeFeed protocol that all backends must
implement, along with change events, row filters and feed errors.

Invariants:
    - A ChangeEvent carries exactly one row mutation
    - A ChangeStream yields events in the order the backend delivered them
    - Opening a stream either returns an established stream or raises

How to change safely:
    - Protocol changes require updating all implementations
    - Keep from_envelope tolerant of extra envelope keys
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, TYPE_CHECKING, runtime_checkable

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for change feed operations."""
    pass


class FeedConnectionError(FeedError):
    """Connection to the feed backend failed."""
    pass


class FeedSerializationError(FeedError):
    """Failed to decode a change envelope."""
    pass


class ChangeKind(str, Enum):
    """Kind of row mutation."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RowFilter:
    """Equality filter on one column, e.g. ``user_id=eq.42``.

    Attributes:
        column: Column to compare
        value: Expected value (compared as strings)
    """

    column: str
    value: str

    @classmethod
    def eq(cls, column: str, value: Any) -> RowFilter:
        return cls(column=column, value=str(value))

    @classmethod
    def parse(cls, text: str) -> RowFilter:
        """Parse the ``column=eq.value`` form.

        Raises:
            ValueError: If the text is not an equality filter.
        """
        column, sep, rest = text.partition("=")
        if not sep or not rest.startswith("eq.") or not column:
            raise ValueError(f"Unsupported filter: {text!r}")
        return cls(column=column, value=rest[3:])

    def matches(self, row: Mapping[str, Any] | None) -> bool:
        if row is None or self.column not in row:
            return False
        value = row[self.column]
        return value is not None and str(value) == self.value

    def to_param(self) -> tuple[str, str]:
        """Query parameter pair for PostgREST-style APIs."""
        return self.column, f"eq.{self.value}"

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


@dataclass(frozen=True)
class ChangeEvent:
    """One row mutation from the remote database.

    Attributes:
        source: Table the row belongs to
        kind: insert, update or delete
        record: New row image (insert/update)
        old_record: Previous row image; for deletes often only the key
        commit_timestamp: Server commit time, informational only

    Example:
        >>> event = ChangeEvent.from_envelope({
        ...     "type": "UPDATE",
        ...     "table": "invoices",
        ...     "record": {"id": "1", "status": "validated"},
        ... })
        >>> event.kind
        <ChangeKind.UPDATE: 'update'>
    """

    source: str
    kind: ChangeKind
    record: Optional[Mapping[str, Any]] = None
    old_record: Optional[Mapping[str, Any]] = None
    commit_timestamp: Optional[str] = None

    @property
    def row(self) -> Optional[Mapping[str, Any]]:
        """The row this event is about: old image for deletes, new otherwise."""
        if self.kind == ChangeKind.DELETE:
            return self.old_record if self.old_record is not None else self.record
        return self.record

    @property
    def key(self) -> Optional[str]:
        row = self.row
        if row is None or row.get("id") is None:
            return None
        return str(row["id"])

    def passes(self, row_filter: RowFilter | None) -> bool:
        """Whether the event should reach a subscription with this filter.

        Delete images frequently carry only the primary key. When the
        filtered column is missing from a delete image the event is
        passed through; deleting an unknown key is a no-op downstream.
        """
        if row_filter is None:
            return True
        row = self.row
        if self.kind == ChangeKind.DELETE and (row is None or row_filter.column not in row):
            return True
        return row_filter.matches(row)

    @classmethod
    def from_envelope(cls, data: Mapping[str, Any], source: str | None = None) -> ChangeEvent:
        """Create from a change-data-capture envelope.

        Args:
            data: Decoded envelope with ``type``, ``table``, ``record``, ``old_record``
            source: Table name to use when the envelope does not carry one

        Raises:
            FeedSerializationError: If the envelope is malformed
        """
        raw_type = str(data.get("type", data.get("eventType", ""))).lower()
        try:
            kind = ChangeKind(raw_type)
        except ValueError:
            raise FeedSerializationError(f"Unknown change type: {raw_type!r}")

        table = data.get("table") or source
        if not table:
            raise FeedSerializationError("Envelope names no table")

        record = data.get("record", data.get("new"))
        old_record = data.get("old_record", data.get("old"))
        for name, image in (("record", record), ("old_record", old_record)):
            if image is not None and not isinstance(image, Mapping):
                raise FeedSerializationError(f"Envelope {name} is not an object")

        return cls(
            source=table,
            kind=kind,
            record=record or None,
            old_record=old_record or None,
            commit_timestamp=data.get("commit_timestamp"),
        )

    @classmethod
    def from_json(cls, raw: bytes, source: str | None = None) -> ChangeEvent:
        """Decode a JSON-encoded envelope.

        Raises:
            FeedSerializationError: If the value is not a valid envelope
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedSerializationError(f"Failed to parse change envelope: {e}")
        if not isinstance(data, Mapping):
            raise FeedSerializationError("Change envelope is not an object")
        return cls.from_envelope(data, source=source)

    def __str__(self) -> str:
        return f"ChangeEvent({self.kind.value} {self.source}/{self.key})"


@runtime_checkable
class ChangeStream(Protocol):
    """An established stream of change events for one table.

    Iterating yields events until the stream is closed. close() must be
    safe to call more than once.
    """

    source: str

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Protocol for change feed backends.

    Ordering contract:
        - Events for a table are delivered in backend order
        - No backend reorders or batches events for a stream

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.connect()
        >>> stream = await feed.open_stream("invoices")
        >>> async for event in stream:
        ...     print(event)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            FeedConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close every open stream and release the connection."""
        ...

    @abstractmethod
    async def open_stream(self, source: str, row_filter: RowFilter | None = None) -> ChangeStream:
        """Open a change stream for a table.

        Args:
            source: Table name
            row_filter: Optional filter the backend may use to pre-filter

        Returns:
            An established ChangeStream

        Raises:
            FeedConnectionError: If the stream cannot be established
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_feed(config: "EngineConfig") -> ChangeFeed:
    """Factory function to create a change feed from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import FeedBackend
    from .kafka import KafkaChangeFeed
    from .memory import InMemoryChangeFeed

    if config.feed_backend == FeedBackend.KAFKA:
        return KafkaChangeFeed(config.kafka)
    elif config.feed_backend == FeedBackend.MEMORY:
        return InMemoryChangeFeed()
    else:
        raise ValueError(f"Unsupported change feed backend: {config.feed_backend}")
