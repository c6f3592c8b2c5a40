"""
Change event reconciler.

The Reconciler takes change events from subscriptions and applies them
to the store bound to the event's table. It is a pure routing and merge
layer:
- Keyed tables: insert / update / delete against a KeyedCollectionStore
- Log tables: insert appends to a BoundedLogBuffer; nothing else is legal
- Watchers (edit sessions) hear about updates and deletes of their key

Invariants:
    - No business validation of payload contents
    - The event kind is trusted as framed by the remote system
    - Protocol violations are logged and dropped, never raised
    - Watchers are notified only after the store reflects the event

How to change safely:
    - New tables need a SourceBinding
    - Test redelivery of every event kind for idempotency
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, Union

from ..errors import ProtocolViolation
from ..models import ENTITY_TYPES, Entity
from ..store import BoundedLogBuffer, KeyedCollectionStore
from ..stream.base import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

Store = Union[KeyedCollectionStore, BoundedLogBuffer]


class EntityWatcher(Protocol):
    """Receives reconciled changes for one entity key."""

    def on_remote_update(self, entity: Entity) -> None:
        ...

    def on_remote_delete(self, key: str) -> None:
        ...


@dataclass
class SourceBinding:
    """Routes one table to its store.

    Attributes:
        source: Table name
        store: Destination store
        entity_type: Entity class rows are parsed into
    """

    source: str
    store: Store
    entity_type: type[Entity] = Entity

    @property
    def append_only(self) -> bool:
        return isinstance(self.store, BoundedLogBuffer)


@dataclass
class ReconcileResult:
    """Result of reconciling one change event.

    Attributes:
        event: The change event, None when the triple could not be turned into one
        applied: Whether the store changed
        violation: Whether the event was rejected as a protocol violation
        error: Reason the event was dropped, if it was
    """

    event: ChangeEvent | None
    applied: bool = False
    violation: bool = False
    error: str | None = None


class Reconciler:
    """Applies change events to the stores of one view.

    Thread safety:
        Designed to be driven from a single event loop. Each store is
        mutated only from here, synchronously.

    Example:
        >>> invoices = KeyedCollectionStore("invoices")
        >>> reconciler = Reconciler([SourceBinding("invoices", invoices, Invoice)])
        >>> reconciler.reconcile_change("invoices", "insert", {"id": "1"})
    """

    def __init__(self, bindings: Iterable[SourceBinding] = ()) -> None:
        self._bindings: dict[str, SourceBinding] = {}
        self._watchers: dict[tuple[str, str], list[EntityWatcher]] = defaultdict(list)
        self._applied_count = 0
        self._dropped_count = 0
        self._violation_count = 0
        for binding in bindings:
            self.add_binding(binding)

    def add_binding(self, binding: SourceBinding) -> SourceBinding:
        if binding.source in self._bindings:
            raise ValueError(f"Source already bound: {binding.source}")
        self._bindings[binding.source] = binding
        return binding

    def bind(
        self,
        source: str,
        store: Store,
        entity_type: type[Entity] | None = None,
    ) -> SourceBinding:
        """Bind a table to a store, defaulting to the table's entity class."""
        return self.add_binding(
            SourceBinding(source, store, entity_type or ENTITY_TYPES.get(source, Entity))
        )

    def binding(self, source: str) -> SourceBinding | None:
        return self._bindings.get(source)

    @property
    def sources(self) -> list[str]:
        return list(self._bindings)

    def watch(self, source: str, key: str, watcher: EntityWatcher) -> Callable[[], None]:
        """Register a watcher for one entity.

        Returns:
            A callable that removes the watcher; safe to call twice
        """
        watchers = self._watchers[(source, key)]
        watchers.append(watcher)

        def unwatch() -> None:
            current = self._watchers.get((source, key))
            if current and watcher in current:
                current.remove(watcher)
                if not current:
                    del self._watchers[(source, key)]

        return unwatch

    def load(self, source: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Feed an initial bulk batch to a store.

        Malformed rows are skipped and counted as violations.

        Returns:
            Number of entities loaded
        """
        binding = self._bindings.get(source)
        if binding is None:
            raise ProtocolViolation(f"No store bound for source {source!r}", source=source)

        entities = []
        for row in rows:
            try:
                entities.append(binding.entity_type.from_row(row))
            except ValueError as e:
                self._violation_count += 1
                logger.warning(
                    f"Skipping malformed row in initial load: {e}",
                    extra={"source": source},
                )
        binding.store.load(entities)
        logger.debug("Initial load applied", extra={"source": source, "rows": len(entities)})
        return len(entities)

    def reconcile_change(
        self,
        source: str,
        kind: ChangeKind | str,
        row: Mapping[str, Any],
    ) -> ReconcileResult:
        """Reconcile a (source, kind, row) triple. An unknown kind is a protocol violation."""
        try:
            kind = ChangeKind(kind)
        except ValueError:
            self._violation_count += 1
            logger.warning(
                "Dropped change event: unknown kind", extra={"source": source, "kind": str(kind)}
            )
            return ReconcileResult(event=None, violation=True, error=f"Unknown change kind {kind!r}")
        if kind == ChangeKind.DELETE:
            event = ChangeEvent(source=source, kind=kind, old_record=row)
        else:
            event = ChangeEvent(source=source, kind=kind, record=row)
        return self.reconcile(event)

    def reconcile(self, event: ChangeEvent) -> ReconcileResult:
        """Apply one change event to its store.

        Never raises for bad events; the result says what happened.
        """
        try:
            result = self._apply(event)
        except ProtocolViolation as e:
            self._violation_count += 1
            logger.warning(f"Dropped change event: {e.message}", extra=e.details)
            return ReconcileResult(event=event, violation=True, error=e.message)

        if result.applied:
            self._applied_count += 1
        else:
            self._dropped_count += 1
            logger.debug(
                "Change event had no effect",
                extra={"source": event.source, "kind": event.kind.value, "key": event.key},
            )
        return result

    def _apply(self, event: ChangeEvent) -> ReconcileResult:
        binding = self._bindings.get(event.source)
        if binding is None:
            raise ProtocolViolation(
                f"No store bound for source {event.source!r}",
                source=event.source,
                kind=event.kind.value,
            )

        if binding.append_only and event.kind != ChangeKind.INSERT:
            raise ProtocolViolation(
                f"{event.kind.value} is not supported for append-only source {event.source!r}",
                source=event.source,
                kind=event.kind.value,
            )

        if event.kind == ChangeKind.DELETE:
            key = event.key
            if key is None:
                raise ProtocolViolation(
                    "Delete event carries no key", source=event.source, kind=event.kind.value
                )
            removed = binding.store.apply_delete(key)
            if removed:
                self._notify_delete(event.source, key)
            return ReconcileResult(event=event, applied=removed)

        try:
            entity = binding.entity_type.from_row(event.row)
        except ValueError as e:
            raise ProtocolViolation(
                f"Malformed row: {e}", source=event.source, kind=event.kind.value
            ) from e

        if binding.append_only:
            return ReconcileResult(event=event, applied=binding.store.append(entity))

        store = binding.store
        existed = entity.id in store
        if event.kind == ChangeKind.INSERT:
            store.apply_insert(entity)
            applied = True
        else:
            applied = store.apply_update(entity)

        if existed and applied:
            self._notify_update(event.source, entity)
        return ReconcileResult(event=event, applied=applied)

    def _notify_update(self, source: str, entity: Entity) -> None:
        for watcher in list(self._watchers.get((source, entity.id), ())):
            try:
                watcher.on_remote_update(entity)
            except Exception as e:
                logger.error(
                    f"Watcher failed on remote update: {e}",
                    exc_info=True,
                    extra={"source": source, "key": entity.id},
                )

    def _notify_delete(self, source: str, key: str) -> None:
        for watcher in list(self._watchers.get((source, key), ())):
            try:
                watcher.on_remote_delete(key)
            except Exception as e:
                logger.error(
                    f"Watcher failed on remote delete: {e}",
                    exc_info=True,
                    extra={"source": source, "key": key},
                )

    @property
    def stats(self) -> dict[str, Any]:
        """Get reconciler statistics."""
        return {
            "sources": self.sources,
            "applied_count": self._applied_count,
            "dropped_count": self._dropped_count,
            "violation_count": self._violation_count,
            "watched_keys": len(self._watchers),
        }
