"""
Dashboard view definitions.

A view is a set of streams. Each stream pairs one table with a store,
an optional row filter derived from the viewer, and the ordering and
size of its initial fetch.

Views:
    invoice_list     invoices owned by the user, newest first
    invoice_detail   one invoice, editable through an EditSession
    system_status    system_logs and sap_logs, newest first, bounded
    field_settings   field_configurations, editable per row
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional

from ..collaborators.base import CurrentUser, OrderBy
from ..config import BufferConfig
from ..models import Entity, FieldConfiguration, IntegrationLogEntry, Invoice, LogEntry
from ..store import BoundedLogBuffer, KeyedCollectionStore
from ..stream.base import RowFilter

INVOICE_LIST = "invoice_list"
INVOICE_DETAIL = "invoice_detail"
SYSTEM_STATUS = "system_status"
FIELD_SETTINGS = "field_settings"


@dataclass(frozen=True)
class ViewContext:
    """Who a view is activated for, and with which parameters."""

    user: Optional[CurrentUser]
    params: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def param(self, name: str) -> str:
        try:
            return self.params[name]
        except KeyError:
            raise ValueError(f"Missing view parameter: {name}") from None


FilterFactory = Callable[[ViewContext], Optional[RowFilter]]
StoreFactory = Callable[[], object]


@dataclass(frozen=True)
class StreamSpec:
    """One table a view subscribes to and loads.

    Attributes:
        source: Table name
        entity_type: Entity class rows are parsed into
        make_store: Builds a fresh store for each activation
        row_filter: Builds the row filter from the view context
        order_by: Ordering of the initial fetch
        limit: Size of the initial fetch, None for all rows
    """

    source: str
    entity_type: type[Entity]
    make_store: StoreFactory
    row_filter: Optional[FilterFactory] = None
    order_by: OrderBy = OrderBy()
    limit: Optional[int] = None

    def filter_for(self, context: ViewContext) -> Optional[RowFilter]:
        if self.row_filter is None:
            return None
        return self.row_filter(context)


@dataclass(frozen=True)
class ViewDefinition:
    """A named set of streams.

    Attributes:
        name: View name
        streams: Tables the view needs
        key_param: Parameter that distinguishes instances of the view
        editable: Tables whose rows can be opened in an edit session
    """

    name: str
    streams: tuple[StreamSpec, ...]
    key_param: Optional[str] = None
    editable: tuple[str, ...] = ()

    def view_id(self, context: ViewContext) -> str:
        """``name:user``, plus ``:param`` for keyed views. Users never share an activation."""
        parts = [self.name, context.user.id if context.user is not None else "anonymous"]
        if self.key_param is not None:
            parts.append(context.param(self.key_param))
        return ":".join(parts)


def _owned_by_user(context: ViewContext) -> RowFilter:
    if context.user is None:
        raise ValueError("View requires a signed-in user")
    return RowFilter.eq("user_id", context.user.id)


def _by_invoice_id(context: ViewContext) -> RowFilter:
    return RowFilter.eq("id", context.param("invoice_id"))


def invoice_list_view() -> ViewDefinition:
    return ViewDefinition(
        name=INVOICE_LIST,
        streams=(
            StreamSpec(
                source=Invoice.source,
                entity_type=Invoice,
                make_store=lambda: KeyedCollectionStore(Invoice.source),
                row_filter=_owned_by_user,
            ),
        ),
    )


def invoice_detail_view() -> ViewDefinition:
    return ViewDefinition(
        name=INVOICE_DETAIL,
        streams=(
            StreamSpec(
                source=Invoice.source,
                entity_type=Invoice,
                make_store=lambda: KeyedCollectionStore(Invoice.source),
                row_filter=_by_invoice_id,
                limit=1,
            ),
        ),
        key_param="invoice_id",
        editable=(Invoice.source,),
    )


def system_status_view(buffers: BufferConfig | None = None) -> ViewDefinition:
    buffers = buffers or BufferConfig()
    capacity = buffers.log_capacity
    limit = min(buffers.initial_fetch_limit, capacity)
    return ViewDefinition(
        name=SYSTEM_STATUS,
        streams=(
            StreamSpec(
                source=LogEntry.source,
                entity_type=LogEntry,
                make_store=lambda: BoundedLogBuffer(capacity, name=LogEntry.source),
                limit=limit,
            ),
            StreamSpec(
                source=IntegrationLogEntry.source,
                entity_type=IntegrationLogEntry,
                make_store=lambda: BoundedLogBuffer(capacity, name=IntegrationLogEntry.source),
                limit=limit,
            ),
        ),
    )


def field_settings_view() -> ViewDefinition:
    return ViewDefinition(
        name=FIELD_SETTINGS,
        streams=(
            StreamSpec(
                source=FieldConfiguration.source,
                entity_type=FieldConfiguration,
                make_store=lambda: KeyedCollectionStore(FieldConfiguration.source),
            ),
        ),
        editable=(FieldConfiguration.source,),
    )


def build_views(buffers: BufferConfig | None = None) -> dict[str, ViewDefinition]:
    """All dashboard views, keyed by name."""
    views = [
        invoice_list_view(),
        invoice_detail_view(),
        system_status_view(buffers),
        field_settings_view(),
    ]
    return {view.name: view for view in views}
