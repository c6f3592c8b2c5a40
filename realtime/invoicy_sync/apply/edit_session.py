"""
Edit session: local, unsaved edits of one entity.

An EditSession holds a staged copy of an entity's editable values and
decides what happens when the remote row changes underneath it:

    CLEAN ──local edit──▶ DIRTY ──save──▶ SAVING ──success──▶ CLEAN
      ▲                    │  ▲             │
      │ remote update      │  └──failure────┘
      └─(replace staged)   │
                           └──remote update──▶ CONFLICTED
                                                 │ keep_local() ─▶ DIRTY
                                                 └ take_remote() ─▶ CLEAN

Invariants:
    - A remote update never silently replaces unsaved local values
    - A failed save keeps every staged value
    - While SAVING, remote updates are held and applied once the commit resolves
    - Conflicts are surfaced to listeners with base, local and remote values

How to change safely:
    - Any new transition must keep the "no implicit last-write-wins" rule
    - Test remote updates in every state, including SAVING
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ..errors import CommitError, InvalidTransition
from ..models import Entity, freeze_value, thaw_value

if TYPE_CHECKING:
    from ..collaborators.base import Committer
    from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class EditState(str, Enum):
    """Lifecycle state of an edit session."""

    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class EditConflict:
    """A remote update that collided with unsaved local values.

    Attributes:
        key: Entity id
        base: Editable values the local edit started from
        local: Staged (unsaved) values
        remote: Editable values of the incoming remote row
        remote_entity: The incoming remote row
    """

    key: str
    base: Mapping[str, Any]
    local: Mapping[str, Any]
    remote: Mapping[str, Any]
    remote_entity: Entity

    @property
    def fields(self) -> list[str]:
        """Fields the remote update changed relative to the base."""
        names = set(self.base) | set(self.remote)
        return sorted(n for n in names if self.base.get(n) != self.remote.get(n))


@dataclass
class SaveResult:
    """Result of EditSession.save().

    Attributes:
        success: Whether the staged values were persisted
        state: Session state after the attempt
        error: The commit failure, if any
    """

    success: bool
    state: EditState
    error: CommitError | None = None


@dataclass
class EditListeners:
    """Callbacks a presentation layer can hook into."""

    on_conflict: list[Callable[[EditConflict], None]] = field(default_factory=list)
    on_commit_error: list[Callable[[CommitError], None]] = field(default_factory=list)
    on_orphaned: list[Callable[[str], None]] = field(default_factory=list)


class EditSession:
    """Staged, not-yet-persisted copy of one entity's editable values.

    Example:
        >>> session = EditSession(invoice, committer)
        >>> session.edit("total_amount", 12)
        >>> session.state
        <EditState.DIRTY: 'dirty'>
        >>> result = await session.save()
    """

    def __init__(
        self,
        entity: Entity,
        committer: Committer,
        source: str | None = None,
    ) -> None:
        self.source = source or entity.source
        self.key = entity.id
        self.listeners = EditListeners()
        self._committer = committer
        self._base = entity
        self._staged: dict[str, Any] = entity.editable_values()
        self._state = EditState.CLEAN
        self._conflict: EditConflict | None = None
        self._held: Entity | None = None
        self._orphaned = False
        self._unwatch: Callable[[], None] | None = None

    # State

    @property
    def state(self) -> EditState:
        return self._state

    @property
    def entity(self) -> Entity:
        """Last remote value the staged copy is based on."""
        return self._base

    @property
    def staged(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._staged))

    @property
    def conflict(self) -> EditConflict | None:
        return self._conflict

    @property
    def orphaned(self) -> bool:
        """Whether the remote row was deleted while the session was open."""
        return self._orphaned

    def _settle(self) -> None:
        """Derive CLEAN/DIRTY from staged vs base."""
        self._state = (
            EditState.CLEAN if self._staged == self._base.editable_values() else EditState.DIRTY
        )

    # Wiring

    def attach(self, reconciler: Reconciler) -> None:
        """Start receiving reconciled changes for this entity."""
        self.detach()
        self._unwatch = reconciler.watch(self.source, self.key, self)

    def detach(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

    # Local edits

    def edit(self, name: str, value: Any) -> EditState:
        """Stage one field."""
        return self.stage({name: value})

    def stage(self, changes: Mapping[str, Any]) -> EditState:
        """Stage several fields at once.

        Raises:
            InvalidTransition: While a save is in flight
            ValueError: If a value has an unsupported kind
        """
        if self._state == EditState.SAVING:
            raise InvalidTransition("Cannot edit while saving", state=self._state.value, action="edit")

        conflict = self._require_conflict("edit") if self._state == EditState.CONFLICTED else None
        frozen = {name: freeze_value(value) for name, value in changes.items()}
        self._staged.update(frozen)

        if conflict is not None:
            self._conflict = EditConflict(
                key=self.key,
                base=conflict.base,
                local=MappingProxyType(dict(self._staged)),
                remote=conflict.remote,
                remote_entity=conflict.remote_entity,
            )
        else:
            self._settle()
        return self._state

    def discard(self) -> EditState:
        """Throw away local values and adopt the newest remote value."""
        if self._state == EditState.SAVING:
            raise InvalidTransition("Cannot discard while saving", state=self._state.value, action="discard")
        if self._conflict is not None:
            self._base = self._conflict.remote_entity
            self._conflict = None
        self._staged = self._base.editable_values()
        self._state = EditState.CLEAN
        return self._state

    # Conflict resolution

    def keep_local(self) -> EditState:
        """Resolve a conflict in favour of the staged values.

        The session is rebased on the remote row and stays DIRTY, so a
        following save() deliberately overwrites the remote values.
        """
        conflict = self._require_conflict("keep_local")
        self._base = conflict.remote_entity
        self._conflict = None
        self._settle()
        logger.info("Conflict resolved keeping local values", extra={"source": self.source, "key": self.key})
        return self._state

    def take_remote(self) -> EditState:
        """Resolve a conflict by adopting the remote values."""
        conflict = self._require_conflict("take_remote")
        self._base = conflict.remote_entity
        self._staged = self._base.editable_values()
        self._conflict = None
        self._state = EditState.CLEAN
        logger.info("Conflict resolved taking remote values", extra={"source": self.source, "key": self.key})
        return self._state

    def _require_conflict(self, action: str) -> EditConflict:
        if self._state != EditState.CONFLICTED or self._conflict is None:
            raise InvalidTransition("No conflict to resolve", state=self._state.value, action=action)
        return self._conflict

    # Commit

    async def save(self) -> SaveResult:
        """Persist the staged values through the commit collaborator.

        Returns:
            SaveResult; a failed commit leaves the session DIRTY

        Raises:
            InvalidTransition: If conflicted or already saving
        """
        if self._state in (EditState.CONFLICTED, EditState.SAVING):
            raise InvalidTransition(
                f"Cannot save while {self._state.value}", state=self._state.value, action="save"
            )
        if self._state == EditState.CLEAN:
            return SaveResult(success=True, state=self._state)

        if self._orphaned:
            error = CommitError("Entity was deleted remotely", source=self.source, key=self.key)
            self._notify_commit_error(error)
            return SaveResult(success=False, state=self._state, error=error)

        snapshot = dict(self._staged)
        payload = type(self._base).commit_payload(snapshot)
        self._state = EditState.SAVING
        logger.debug("Saving edit", extra={"source": self.source, "key": self.key, "fields": sorted(snapshot)})

        try:
            row = await self._committer.commit(self.source, self.key, payload)
        except CommitError as e:
            return self._commit_failed(e)
        except asyncio.CancelledError:
            self._state = EditState.DIRTY
            self._release_held()
            raise
        except Exception as e:
            logger.exception("Unexpected error while saving", extra={"source": self.source, "key": self.key})
            return self._commit_failed(
                CommitError(f"Saving {self.source}/{self.key} failed: {e}", source=self.source, key=self.key)
            )

        try:
            committed = type(self._base).from_row(row) if row else self._base.with_editable(snapshot)
        except ValueError:
            logger.warning(
                "Commit returned a malformed row; using staged values",
                extra={"source": self.source, "key": self.key},
            )
            committed = self._base.with_editable(snapshot)

        self._base = committed
        self._staged = committed.editable_values()
        self._state = EditState.CLEAN
        logger.info("Edit saved", extra={"source": self.source, "key": self.key})
        self._release_held()
        return SaveResult(success=True, state=self._state)

    def _commit_failed(self, error: CommitError) -> SaveResult:
        self._state = EditState.DIRTY
        logger.warning(
            f"Edit failed to save: {error.message}",
            extra={"source": self.source, "key": self.key},
        )
        self._notify_commit_error(error)
        self._release_held()
        return SaveResult(success=False, state=self._state, error=error)

    def _release_held(self) -> None:
        held, self._held = self._held, None
        if held is not None:
            self.on_remote_update(held)

    # Remote changes (EntityWatcher)

    def on_remote_update(self, entity: Entity) -> None:
        if entity.id != self.key:
            return

        if self._state == EditState.SAVING:
            self._held = entity
            return

        remote = entity.editable_values()

        if self._state == EditState.CLEAN:
            self._base = entity
            self._staged = remote
            return

        if remote == self._staged:
            # Remote caught up with the local values
            self._base = entity
            self._conflict = None
            self._state = EditState.CLEAN
            return

        base = self._conflict.base if self._conflict is not None else self._base.editable_values()
        if remote == base:
            # Only remote-only columns changed (status, scores, errors)
            self._base = entity
            self._conflict = None
            self._settle()
            return

        self._conflict = EditConflict(
            key=self.key,
            base=MappingProxyType(dict(base)),
            local=MappingProxyType(dict(self._staged)),
            remote=MappingProxyType(dict(remote)),
            remote_entity=entity,
        )
        self._state = EditState.CONFLICTED
        logger.info(
            "Remote update conflicts with local edit",
            extra={"source": self.source, "key": self.key, "fields": self._conflict.fields},
        )
        for callback in list(self.listeners.on_conflict):
            self._safe_call(callback, self._conflict)

    def on_remote_delete(self, key: str) -> None:
        if key != self.key:
            return
        self._orphaned = True
        logger.info("Entity under edit was deleted remotely", extra={"source": self.source, "key": key})
        for callback in list(self.listeners.on_orphaned):
            self._safe_call(callback, key)

    def _notify_commit_error(self, error: CommitError) -> None:
        for callback in list(self.listeners.on_commit_error):
            self._safe_call(callback, error)

    def _safe_call(self, callback: Callable[[Any], None], arg: Any) -> None:
        try:
            callback(arg)
        except Exception as e:
            logger.error(f"Edit session listener failed: {e}", exc_info=True)

    def to_dict(self) -> dict[str, Any]:
        """State summary for presentation."""
        conflict = self._conflict
        return {
            "key": self.key,
            "source": self.source,
            "state": self._state.value,
            "orphaned": self._orphaned,
            "staged": {name: thaw_value(value) for name, value in self._staged.items()},
            "conflict": None
            if conflict is None
            else {
                "fields": conflict.fields,
                "base": {n: thaw_value(v) for n, v in conflict.base.items()},
                "local": {n: thaw_value(v) for n, v in conflict.local.items()},
                "remote": {n: thaw_value(v) for n, v in conflict.remote.items()},
            },
        }
