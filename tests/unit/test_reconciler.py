"""
Unit tests for the Reconciler.

Tests cover:
- Routing events to the store bound to their table
- Protocol violations (append-only sources, malformed rows, unbound tables)
- Initial loads
- Watcher notifications
"""

import pytest

from realtime.invoicy_sync.apply import Reconciler, SourceBinding
from realtime.invoicy_sync.models import Invoice, LogEntry
from realtime.invoicy_sync.store import BoundedLogBuffer, KeyedCollectionStore
from realtime.invoicy_sync.stream import ChangeEvent, ChangeKind


class RecordingWatcher:
    """Collects the notifications it receives."""

    def __init__(self):
        self.updates = []
        self.deletes = []

    def on_remote_update(self, entity):
        self.updates.append(entity)

    def on_remote_delete(self, key):
        self.deletes.append(key)


class TestReconciler:
    """Tests for Reconciler."""

    @pytest.fixture
    def invoices(self):
        store = KeyedCollectionStore("invoices")
        store.load([Invoice.from_row({"id": "1", "status": "processing"})])
        return store

    @pytest.fixture
    def logs(self):
        buffer = BoundedLogBuffer(capacity=3, name="system_logs")
        buffer.load([])
        return buffer

    @pytest.fixture
    def reconciler(self, invoices, logs):
        reconciler = Reconciler()
        reconciler.bind("invoices", invoices)
        reconciler.bind("system_logs", logs)
        return reconciler

    def test_bind_uses_entity_type_for_table(self, reconciler):
        assert reconciler.binding("invoices").entity_type is Invoice
        assert reconciler.binding("system_logs").entity_type is LogEntry
        assert reconciler.binding("system_logs").append_only
        assert not reconciler.binding("invoices").append_only

    def test_duplicate_binding_rejected(self, reconciler):
        with pytest.raises(ValueError):
            reconciler.bind("invoices", KeyedCollectionStore())

    def test_update_reaches_store(self, reconciler, invoices):
        result = reconciler.reconcile_change("invoices", "update", {"id": "1", "status": "validated"})

        assert result.applied
        snapshot = invoices.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0].get("status") == "validated"
        assert isinstance(snapshot[0], Invoice)

    def test_insert_reaches_store(self, reconciler, invoices):
        reconciler.reconcile_change("invoices", ChangeKind.INSERT, {"id": "2"})

        assert invoices.keys() == ["2", "1"]

    def test_delete_of_absent_key(self, reconciler, invoices):
        result = reconciler.reconcile_change("invoices", "delete", {"id": "missing"})

        assert not result.applied
        assert not result.violation
        assert invoices.keys() == ["1"]

    def test_log_insert_appends(self, reconciler, logs):
        reconciler.reconcile_change("system_logs", "insert", {"id": "l1", "message": "hi"})

        assert [e.id for e in logs.snapshot()] == ["l1"]

    @pytest.mark.parametrize("kind", ["update", "delete"])
    def test_non_insert_on_log_is_violation(self, reconciler, logs, kind):
        logs.append(LogEntry.from_row({"id": "l1"}))

        result = reconciler.reconcile_change("system_logs", kind, {"id": "l1", "message": "edited"})

        assert result.violation
        assert not result.applied
        assert logs.snapshot()[0].message == ""
        assert reconciler.stats["violation_count"] == 1

    def test_unbound_table_is_violation(self, reconciler):
        result = reconciler.reconcile_change("sap_logs", "insert", {"id": "s1"})

        assert result.violation
        assert "sap_logs" in result.error

    def test_unknown_kind_is_violation(self, reconciler, invoices):
        result = reconciler.reconcile_change("invoices", "truncate", {"id": "1"})

        assert result.violation
        assert result.event is None
        assert "truncate" in result.error
        assert invoices.keys() == ["1"]
        assert reconciler.stats["violation_count"] == 1

    def test_row_without_id_is_violation(self, reconciler, invoices):
        result = reconciler.reconcile(ChangeEvent("invoices", ChangeKind.INSERT, record={"status": "x"}))

        assert result.violation
        assert invoices.keys() == ["1"]

    def test_delete_without_key_is_violation(self, reconciler):
        result = reconciler.reconcile(ChangeEvent("invoices", ChangeKind.DELETE))

        assert result.violation

    def test_unsupported_value_kind_is_violation(self, reconciler):
        result = reconciler.reconcile(
            ChangeEvent("invoices", ChangeKind.INSERT, record={"id": "2", "blob": object()})
        )

        assert result.violation

    def test_load_skips_malformed_rows(self, logs):
        reconciler = Reconciler([SourceBinding("system_logs", logs, LogEntry)])

        count = reconciler.load("system_logs", [{"id": "a"}, {"message": "no id"}, {"id": "b"}])

        assert count == 2
        assert [e.id for e in logs.snapshot()] == ["a", "b"]
        assert reconciler.stats["violation_count"] == 1

    def test_stats(self, reconciler):
        reconciler.reconcile_change("invoices", "update", {"id": "1"})
        reconciler.reconcile_change("invoices", "update", {"id": "404"})
        reconciler.reconcile_change("sap_logs", "insert", {"id": "s"})

        stats = reconciler.stats
        assert stats["applied_count"] == 1
        assert stats["dropped_count"] == 1
        assert stats["violation_count"] == 1
        assert set(stats["sources"]) == {"invoices", "system_logs"}


class TestReconcilerWatchers:
    """Tests for entity watchers."""

    @pytest.fixture
    def reconciler(self):
        store = KeyedCollectionStore("invoices")
        store.load([Invoice.from_row({"id": "1"}), Invoice.from_row({"id": "2"})])
        reconciler = Reconciler()
        reconciler.bind("invoices", store)
        return reconciler

    def test_update_notifies_watcher_of_that_key(self, reconciler):
        watcher = RecordingWatcher()
        reconciler.watch("invoices", "1", watcher)

        reconciler.reconcile_change("invoices", "update", {"id": "1", "status": "validated"})
        reconciler.reconcile_change("invoices", "update", {"id": "2", "status": "validated"})

        assert [e.id for e in watcher.updates] == ["1"]
        assert watcher.updates[0].get("status") == "validated"

    def test_delete_notifies_watcher(self, reconciler):
        watcher = RecordingWatcher()
        reconciler.watch("invoices", "1", watcher)

        reconciler.reconcile_change("invoices", "delete", {"id": "1"})
        reconciler.reconcile_change("invoices", "delete", {"id": "1"})

        assert watcher.deletes == ["1"]

    def test_unwatch_is_idempotent(self, reconciler):
        watcher = RecordingWatcher()
        unwatch = reconciler.watch("invoices", "1", watcher)

        unwatch()
        unwatch()
        reconciler.reconcile_change("invoices", "update", {"id": "1"})

        assert watcher.updates == []
        assert reconciler.stats["watched_keys"] == 0

    def test_failing_watcher_does_not_break_reconcile(self, reconciler):
        class Broken(RecordingWatcher):
            def on_remote_update(self, entity):
                raise RuntimeError("listener bug")

        healthy = RecordingWatcher()
        reconciler.watch("invoices", "1", Broken())
        reconciler.watch("invoices", "1", healthy)

        result = reconciler.reconcile_change("invoices", "update", {"id": "1", "status": "validated"})

        assert result.applied
        assert len(healthy.updates) == 1
