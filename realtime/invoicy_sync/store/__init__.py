"""
Derived in-memory stores.

This module provides the containers that hold reconciled remote state:
- KeyedCollectionStore: ordered, key-unique entities (invoices, field configs)
- BoundedLogBuffer: newest-first, capacity-limited log tails

Both are materialized views of the remote database. They can be
rebuilt at any time from a bulk fetch plus the live change stream.

Invariants:
    - Stores are mutated only by the Reconciler
    - Readers get immutable snapshots, never the live containers
"""

from .keyed_store import KeyedCollectionStore
from .log_buffer import DEFAULT_CAPACITY, BoundedLogBuffer

__all__ = [
    "KeyedCollectionStore",
    "BoundedLogBuffer",
    "DEFAULT_CAPACITY",
]
