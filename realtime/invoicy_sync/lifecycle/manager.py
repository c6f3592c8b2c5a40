"""
Subscription lifecycle manager.

Activating a view opens every subscription the view needs and starts
its initial bulk fetches; deactivating closes all of them exactly once.

    activate(view, user)                         deactivate(view_id)
      │                                             │
      ├─ register handles (sync, before any await)  ├─ mark activation inactive
      ├─ start bulk fetches (tasks)                 ├─ detach edit sessions
      └─ open streams (concurrently)                ├─ close every handle
                                                    └─ cancel pending fetches

Invariants:
    - At most one activation per view id; activate() on an active view
      returns the existing activation
    - View ids include the user; one user never tears down another's view
    - Every activation has a fresh generation; handles are never reused
    - Deactivation does not wait for fetches to know what to close
    - A fetch that resolves after deactivation is discarded, not applied
    - No user means no subscriptions

How to change safely:
    - Register every resource on the activation before the first await
    - Test deactivation while opening and while fetching
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..apply.edit_session import EditSession
from ..apply.reconciler import Reconciler, Store
from ..collaborators.base import BulkFetcher, Committer, CurrentUser
from ..errors import FetchError, StaleHandleError, SubscriptionError, SyncError
from ..models import Entity
from ..store import KeyedCollectionStore
from .subscription import SubscriptionHandle, SubscriptionHub
from .views import StreamSpec, ViewContext, ViewDefinition

logger = logging.getLogger(__name__)


class ActivationStatus(str, Enum):
    """What a view can currently offer its reader."""

    LOADING = "loading"
    LIVE = "live"
    FETCH_ONLY = "fetch_only"
    UNAUTHENTICATED = "unauthenticated"
    INACTIVE = "inactive"


@dataclass(eq=False)
class ViewActivation:
    """Resources and derived state of one activation of a view.

    Attributes:
        view_id: View name, user id and key parameter, e.g. ``invoice_detail:u1:42``
        definition: The view definition
        context: User and parameters the activation was built for
        generation: Monotonic activation number
        reconciler: Routes this activation's events to its stores
        handles: Every subscription handle registered for the activation
        errors: Subscription and fetch errors surfaced to the reader
    """

    view_id: str
    definition: ViewDefinition
    context: ViewContext
    generation: int
    reconciler: Reconciler = field(default_factory=Reconciler)
    handles: list[SubscriptionHandle] = field(default_factory=list)
    errors: list[SyncError] = field(default_factory=list)
    status: ActivationStatus = ActivationStatus.LOADING
    _stores: dict[str, Store] = field(default_factory=dict, repr=False)
    _fetch_tasks: dict[str, asyncio.Task] = field(default_factory=dict, repr=False)
    _sessions: dict[tuple[str, str], EditSession] = field(default_factory=dict, repr=False)
    _active: bool = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def live(self) -> bool:
        return self._active and bool(self.handles) and all(h.is_open for h in self.handles)

    @property
    def stores(self) -> Mapping[str, Store]:
        return MappingProxyType(self._stores)

    def store(self, source: str) -> Store:
        return self._stores[source]

    def snapshot(self, source: str) -> tuple[Entity, ...]:
        return self._stores[source].snapshot()

    def loaded(self, source: str) -> bool:
        return self._stores[source].loaded

    def ensure_active(self) -> None:
        if not self._active:
            raise StaleHandleError(
                f"View {self.view_id} (generation {self.generation}) is no longer active"
            )

    def apply_fetch(self, source: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Apply a bulk fetch result.

        Raises:
            StaleHandleError: If the activation was torn down meanwhile
        """
        self.ensure_active()
        return self.reconciler.load(source, rows)

    def record_error(self, error: SyncError) -> None:
        self.errors.append(error)

    async def wait_loaded(self) -> None:
        """Wait until every initial fetch has finished, one way or another."""
        tasks = [t for t in self._fetch_tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Edit sessions

    def open_edit_session(self, source: str, key: str, committer: Committer) -> EditSession:
        """Open (or return the open) edit session for an entity in this view.

        Raises:
            StaleHandleError: If the activation is no longer active
            LookupError: If the entity is not in the view's store
        """
        self.ensure_active()
        existing = self._sessions.get((source, key))
        if existing is not None:
            return existing

        store = self._stores.get(source)
        if not isinstance(store, KeyedCollectionStore):
            raise LookupError(f"View {self.view_id} has no editable source {source!r}")
        entity = store.get(key)
        if entity is None:
            raise LookupError(f"{source}/{key} is not loaded in view {self.view_id}")

        session = EditSession(entity, committer, source=source)
        session.attach(self.reconciler)
        self._sessions[(source, key)] = session
        return session

    def edit_session(self, source: str, key: str) -> EditSession | None:
        return self._sessions.get((source, key))

    def close_edit_session(self, source: str, key: str) -> None:
        session = self._sessions.pop((source, key), None)
        if session is not None:
            session.detach()

    def _teardown(self) -> list[asyncio.Task]:
        self._active = False
        self.status = ActivationStatus.INACTIVE
        for session in self._sessions.values():
            session.detach()
        self._sessions.clear()
        pending = [t for t in self._fetch_tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        return pending

    def to_dict(self) -> dict[str, Any]:
        return {
            "view_id": self.view_id,
            "view": self.definition.name,
            "generation": self.generation,
            "status": self.status.value,
            "live": self.live,
            "loaded": {source: store.loaded for source, store in self._stores.items()},
            "errors": [e.to_dict() for e in self.errors],
            "subscriptions": [h.to_dict() for h in self.handles],
        }


class LifecycleManager:
    """Opens and tears down the subscriptions of dashboard views.

    Example:
        >>> manager = LifecycleManager(hub, fetcher)
        >>> activation = await manager.activate(INVOICE_LIST, user)
        >>> await activation.wait_loaded()
        >>> activation.snapshot("invoices")
        >>> await manager.deactivate(activation.view_id)
    """

    def __init__(self, hub: SubscriptionHub, fetcher: BulkFetcher) -> None:
        self.hub = hub
        self.fetcher = fetcher
        self._active: dict[str, ViewActivation] = {}
        self._generations = itertools.count(1)

    @property
    def active_views(self) -> list[str]:
        return list(self._active)

    def get(self, view_id: str) -> ViewActivation | None:
        return self._active.get(view_id)

    async def activate(
        self,
        definition: ViewDefinition,
        user: CurrentUser | None,
        params: Mapping[str, str] | None = None,
    ) -> ViewActivation:
        """Activate a view for a user.

        The view id includes the user, so each user gets their own
        activation and an already active view is returned as is.
        Subscription failures do not raise; they leave the activation in
        FETCH_ONLY status with the error recorded.
        """
        context = ViewContext(user=user, params=MappingProxyType(dict(params or {})))
        view_id = definition.view_id(context)

        # No await between this lookup and registration below
        existing = self._active.get(view_id)
        if existing is not None:
            return existing

        activation = ViewActivation(
            view_id=view_id,
            definition=definition,
            context=context,
            generation=next(self._generations),
        )

        if user is None:
            activation.status = ActivationStatus.UNAUTHENTICATED
            activation._active = False
            logger.info("No user; view not activated", extra={"view_id": view_id})
            return activation

        self._active[view_id] = activation

        for spec in definition.streams:
            store = spec.make_store()
            activation._stores[spec.source] = store
            activation.reconciler.bind(spec.source, store, spec.entity_type)
            handle = self.hub.register(
                spec.source,
                spec.filter_for(context),
                activation.reconciler.reconcile,
                on_error=lambda h, e, a=activation: self._on_stream_error(a, h, e),
            )
            activation.handles.append(handle)

        for spec in definition.streams:
            activation._fetch_tasks[spec.source] = asyncio.create_task(
                self._fetch(activation, spec),
                name=f"fetch-{view_id}-{spec.source}",
            )

        results = await asyncio.gather(
            *(self.hub.start(handle) for handle in activation.handles),
            return_exceptions=True,
        )
        for handle, result in zip(activation.handles, results):
            if isinstance(result, SubscriptionError):
                activation.record_error(result)
            elif isinstance(result, Exception):
                logger.error(
                    f"Unexpected error opening subscription: {result}",
                    exc_info=result,
                    extra={"view_id": view_id, "source": handle.source},
                )
                activation.record_error(SubscriptionError(str(result), source=handle.source))

        if not activation.active:
            return activation

        activation.status = ActivationStatus.LIVE if activation.live else ActivationStatus.FETCH_ONLY
        logger.info(
            "View activated",
            extra={
                "view_id": view_id,
                "generation": activation.generation,
                "status": activation.status.value,
                "user_id": user.id,
            },
        )
        return activation

    async def _fetch(self, activation: ViewActivation, spec: StreamSpec) -> None:
        try:
            rows = await self.fetcher.fetch(
                spec.source,
                spec.filter_for(activation.context),
                spec.order_by,
                spec.limit,
            )
        except FetchError as e:
            if activation.active:
                activation.record_error(e)
                logger.warning(
                    f"Initial fetch failed: {e.message}",
                    extra={"view_id": activation.view_id, "source": spec.source},
                )
            return

        try:
            count = activation.apply_fetch(spec.source, rows)
        except StaleHandleError:
            logger.debug(
                "Fetch resolved after deactivation; discarded",
                extra={"view_id": activation.view_id, "source": spec.source},
            )
            return
        logger.debug(
            "Initial fetch applied",
            extra={"view_id": activation.view_id, "source": spec.source, "rows": count},
        )

    def _on_stream_error(
        self,
        activation: ViewActivation,
        handle: SubscriptionHandle,
        error: SubscriptionError,
    ) -> None:
        if not activation.active:
            return
        activation.record_error(error)
        activation.status = ActivationStatus.FETCH_ONLY
        logger.warning(
            "View fell back to fetch-only mode",
            extra={"view_id": activation.view_id, "source": handle.source},
        )

    async def refresh(self, view_id: str) -> ViewActivation:
        """Re-run the bulk fetches of an active view.

        Useful for fetch-only views, which receive no live events.

        Raises:
            StaleHandleError: If the view is not active
        """
        activation = self._active.get(view_id)
        if activation is None:
            raise StaleHandleError(f"View {view_id} is not active")
        for spec in activation.definition.streams:
            await self._fetch(activation, spec)
        return activation

    async def deactivate(self, view_id: str) -> bool:
        """Tear down a view. Safe to call for views that are not active.

        Returns:
            False if the view was not active
        """
        activation = self._active.pop(view_id, None)
        if activation is None:
            return False

        pending = activation._teardown()
        for handle in activation.handles:
            await self.hub.close(handle)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(
            "View deactivated",
            extra={
                "view_id": view_id,
                "generation": activation.generation,
                "handles": len(activation.handles),
                "cancelled_fetches": len(pending),
            },
        )
        return True

    async def deactivate_all(self) -> None:
        for view_id in list(self._active):
            await self.deactivate(view_id)
