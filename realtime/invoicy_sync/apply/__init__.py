"""
Applying remote changes to derived state.

- Reconciler: routes change events to the store bound to their table
- EditSession: staged local edits of one entity, with conflict detection

Invariants:
    - Stores are mutated only through the Reconciler
    - Local edits never silently lose to a remote update
"""

from .edit_session import (
    EditConflict,
    EditListeners,
    EditSession,
    EditState,
    SaveResult,
)
from .reconciler import (
    EntityWatcher,
    ReconcileResult,
    Reconciler,
    SourceBinding,
    Store,
)

__all__ = [
    "Reconciler",
    "ReconcileResult",
    "SourceBinding",
    "EntityWatcher",
    "Store",
    "EditSession",
    "EditState",
    "EditConflict",
    "EditListeners",
    "SaveResult",
]
