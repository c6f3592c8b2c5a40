"""
Invoicy Sync - real-time change-stream reconciliation for the review dashboard.

This package keeps client-held collections consistent with the remote
invoice database while users edit extracted fields:
- Remote row changes arrive as insert/update/delete change events
- Keyed stores and bounded log buffers are derived, in-memory views
- Edit sessions hold unsaved local edits and surface remote conflicts

Architecture:
    ┌──────────────┐    ┌────────────────────┐    ┌──────────────┐
    │ Change Feed  │───▶│ SubscriptionHub    │───▶│  Reconciler  │
    │ (Kafka/mem)  │    │ (one pump/handle)  │    │ (route+merge)│
    └──────────────┘    └────────────────────┘    └──────┬───────┘
                                                         │
                          ┌──────────────────────────────┼──────────────┐
                          ▼                              ▼              ▼
                  ┌───────────────┐             ┌───────────────┐ ┌────────────┐
                  │ KeyedStore    │             │ LogBuffer     │ │EditSession │
                  │ (invoices,    │             │ (system_logs, │ │ (conflict  │
                  │  field cfgs)  │             │  sap_logs)    │ │  policy)   │
                  └───────────────┘             └───────────────┘ └────────────┘

    The LifecycleManager opens every subscription of a view on activation,
    runs the initial bulk fetch alongside, and closes everything exactly
    once on deactivation.

Invariants:
    - The remote database is the source of truth; nothing here persists
    - Every store is mutated only by its Reconciler
    - Unsaved local edits are never overwritten by a remote update

How to change safely:
    - New sources need a SourceBinding and a view definition
    - Keep store operations idempotent under event redelivery
    - Test pre-load event ordering when touching load paths
"""

from ._version import __version__

__all__ = ["__version__"]
