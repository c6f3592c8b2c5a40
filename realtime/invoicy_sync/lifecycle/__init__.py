"""
Subscription lifecycle for dashboard views.

- SubscriptionHub: opens and closes individual change-stream handles
- LifecycleManager: activates views, pairing subscriptions with fetches
- View definitions: which tables each dashboard view needs
"""

from .manager import ActivationStatus, LifecycleManager, ViewActivation
from .subscription import HandleState, SubscriptionHandle, SubscriptionHub
from .views import (
    FIELD_SETTINGS,
    INVOICE_DETAIL,
    INVOICE_LIST,
    SYSTEM_STATUS,
    StreamSpec,
    ViewContext,
    ViewDefinition,
    build_views,
    field_settings_view,
    invoice_detail_view,
    invoice_list_view,
    system_status_view,
)

__all__ = [
    "SubscriptionHub",
    "SubscriptionHandle",
    "HandleState",
    "LifecycleManager",
    "ViewActivation",
    "ActivationStatus",
    "ViewDefinition",
    "ViewContext",
    "StreamSpec",
    "build_views",
    "invoice_list_view",
    "invoice_detail_view",
    "system_status_view",
    "field_settings_view",
    "INVOICE_LIST",
    "INVOICE_DETAIL",
    "SYSTEM_STATUS",
    "FIELD_SETTINGS",
]
