"""
Change feed abstraction for the sync engine.

This module provides a pluggable change feed interface supporting:
- Kafka (change-data-capture topics, production)
- In-memory (tests and local development)

Invariants:
    - The remote database is the source of truth; the feed only reports it
    - Events reach a stream in backend order, never reordered or batched
    - A stream that could not be opened raises instead of staying silent

How to change safely:
    - New backends must implement the ChangeFeed protocol
    - Keep envelope decoding in ChangeEvent.from_envelope
"""

from .base import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    ChangeStream,
    FeedConnectionError,
    FeedError,
    FeedSerializationError,
    RowFilter,
    create_change_feed,
)
from .kafka import KafkaChangeFeed
from .memory import InMemoryChangeFeed

__all__ = [
    # Protocol and types
    "ChangeFeed",
    "ChangeStream",
    "ChangeEvent",
    "ChangeKind",
    "RowFilter",
    "FeedError",
    "FeedConnectionError",
    "FeedSerializationError",
    # Factory
    "create_change_feed",
    # Implementations
    "KafkaChangeFeed",
    "InMemoryChangeFeed",
]
