"""
Ordered, key-unique collection store.

Holds the entities of one keyed table (invoices, field configurations)
in display order: most recently inserted first.

Invariants:
    - At most one entity per key
    - Inserts go to the front; updates and deletes never reorder survivors
    - Every operation is idempotent under redelivery of the same event
    - Events applied before the first load are journaled and win over
      the (older) loaded batch

How to change safely:
    - Keep mutations synchronous; they must not be split by an await
    - Test the load merge with events that precede the batch
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

from ..models import Entity

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

_UPSERT = "upsert"
_DELETE = "delete"


class KeyedCollectionStore(Generic[E]):
    """Ordered map from entity id to entity.

    Before the first load() the store is live but unloaded: events are
    applied as usual and also recorded in a journal. load() then merges
    the batch with that journal instead of blindly replacing, so a bulk
    fetch that resolves after live events cannot roll them back.

    Example:
        >>> store = KeyedCollectionStore("invoices")
        >>> store.load([inv_a, inv_b])
        >>> store.apply_insert(inv_c)
        >>> [e.id for e in store.snapshot()]
        ['c', 'a', 'b']
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._items: OrderedDict[str, E] = OrderedDict()
        self._journal: OrderedDict[str, tuple[str, E | None]] = OrderedDict()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self, initial: Iterable[E]) -> None:
        """Replace contents with an ordered batch.

        When events arrived before the first load:
        - keys deleted live are dropped from the batch
        - keys updated live keep the live version at their batch position
        - keys inserted live and missing from the batch stay in front
        """
        batch: OrderedDict[str, E] = OrderedDict()
        for entity in initial:
            if entity.id not in batch:
                batch[entity.id] = entity

        if self._journal and not self._loaded:
            front: list[E] = [
                entity
                for key, entity in self._items.items()
                if key not in batch
            ]
            merged: OrderedDict[str, E] = OrderedDict((e.id, e) for e in front)
            for key, entity in batch.items():
                op, live = self._journal.get(key, (None, None))
                if op == _DELETE:
                    continue
                merged[key] = live if op == _UPSERT and live is not None else entity
            logger.debug(
                "Merged initial load with live events",
                extra={"store": self.name, "batch": len(batch), "journaled": len(self._journal)},
            )
            batch = merged

        self._items = batch
        self._journal.clear()
        self._loaded = True

    def reset(self) -> None:
        """Drop everything and return to the unloaded state."""
        self._items.clear()
        self._journal.clear()
        self._loaded = False

    def apply_insert(self, entity: E) -> None:
        """Prepend a new entity; an existing key is treated as an update."""
        if entity.id in self._items:
            self.apply_update(entity)
            return
        self._items[entity.id] = entity
        self._items.move_to_end(entity.id, last=False)
        self._record(entity.id, _UPSERT, entity)

    def apply_update(self, entity: E) -> bool:
        """Replace an entity in place.

        Returns:
            False if the key is unknown (the update is dropped)
        """
        if not self._loaded:
            # Remember it for the batch that has not arrived yet
            self._record(entity.id, _UPSERT, entity)
        if entity.id not in self._items:
            return False
        self._items[entity.id] = entity
        return True

    def apply_delete(self, key: str) -> bool:
        """Remove an entity.

        Returns:
            False if the key was not present
        """
        self._record(key, _DELETE, None)
        return self._items.pop(key, None) is not None

    def _record(self, key: str, op: str, entity: E | None) -> None:
        if not self._loaded:
            self._journal[key] = (op, entity)

    # Read side

    def snapshot(self) -> tuple[E, ...]:
        """Immutable view of the current contents, in display order."""
        return tuple(self._items.values())

    def get(self, key: str) -> E | None:
        return self._items.get(key)

    def keys(self) -> list[str]:
        return list(self._items.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[E]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"KeyedCollectionStore({self.name!r}, size={len(self)}, loaded={self._loaded})"
