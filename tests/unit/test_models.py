"""
Unit tests for entity models.

Tests cover:
- Payload freezing and value kinds
- Row parsing
- Editable values and commit payloads
- Presentation helpers (invoice summary, integration outcome)
"""

from types import MappingProxyType

import pytest

from realtime.invoicy_sync.models import (
    ENTITY_TYPES,
    Entity,
    FieldConfiguration,
    IntegrationLogEntry,
    Invoice,
    InvoiceStatus,
    LogEntry,
    freeze_value,
    thaw_value,
)


class TestFreezeValue:
    """Tests for payload freezing."""

    def test_scalars_pass_through(self):
        for value in ("text", 1, 1.5, True, None):
            assert freeze_value(value) == value

    def test_mapping_becomes_read_only(self):
        frozen = freeze_value({"a": {"b": 1}})

        assert isinstance(frozen, MappingProxyType)
        assert isinstance(frozen["a"], MappingProxyType)
        with pytest.raises(TypeError):
            frozen["a"] = 2

    def test_list_becomes_tuple(self):
        assert freeze_value([1, [2, 3]]) == (1, (2, 3))

    def test_unsupported_kind_rejected(self):
        with pytest.raises(ValueError):
            freeze_value({"when": object()})

    def test_non_string_keys_rejected(self):
        with pytest.raises(ValueError):
            freeze_value({1: "x"})

    def test_thaw_restores_plain_values(self):
        original = {"a": [1, {"b": None}], "c": "d"}

        assert thaw_value(freeze_value(original)) == original


class TestEntity:
    """Tests for the base entity."""

    def test_from_row(self):
        entity = Entity.from_row({"id": 7, "created_at": "2024-01-01", "x": [1]})

        assert entity.id == "7"
        assert entity.created_at == "2024-01-01"
        assert entity.get("x") == (1,)

    def test_from_row_requires_id(self):
        with pytest.raises(ValueError):
            Entity.from_row({"x": 1})
        with pytest.raises(ValueError):
            Entity.from_row({"id": ""})

    def test_from_row_requires_mapping(self):
        with pytest.raises(ValueError):
            Entity.from_row(["id", "1"])

    def test_equal_rows_give_equal_entities(self):
        assert Entity.from_row({"id": "1", "a": 1}) == Entity.from_row({"id": "1", "a": 1})

    def test_with_changes_keeps_type(self):
        invoice = Invoice.from_row({"id": "1", "status": "uploaded"})

        changed = invoice.with_changes({"status": "validated"})

        assert isinstance(changed, Invoice)
        assert changed.status == InvoiceStatus.VALIDATED
        assert invoice.status == InvoiceStatus.UPLOADED

    def test_read_only_entities_have_no_editable_values(self):
        assert LogEntry.from_row({"id": "1", "message": "m"}).editable_values() == {}

    def test_entity_types_registry(self):
        assert ENTITY_TYPES["invoices"] is Invoice
        assert ENTITY_TYPES["field_configurations"] is FieldConfiguration
        assert ENTITY_TYPES["system_logs"] is LogEntry
        assert ENTITY_TYPES["sap_logs"] is IntegrationLogEntry


class TestInvoice:
    """Tests for Invoice."""

    @pytest.fixture
    def invoice(self):
        return Invoice.from_row({
            "id": "inv-1",
            "user_id": "u1",
            "status": "flagged",
            "extracted_data": {"vendor": "ACME", "total_amount": 120.5, "currency": "EUR"},
            "confidence_scores": {"vendor": 0.9},
            "validation_errors": {"invoice_date": "missing"},
        })

    def test_properties(self, invoice):
        assert invoice.status == InvoiceStatus.FLAGGED
        assert invoice.user_id == "u1"
        assert invoice.confidence_scores["vendor"] == 0.9
        assert invoice.validation_errors["invoice_date"] == "missing"

    def test_editable_values_are_extracted_data(self, invoice):
        assert invoice.editable_values() == {"vendor": "ACME", "total_amount": 120.5, "currency": "EUR"}

    def test_commit_payload_wraps_extracted_data(self):
        payload = Invoice.commit_payload({"vendor": "ACME", "lines": (1, 2)})

        assert payload == {"extracted_data": {"vendor": "ACME", "lines": [1, 2]}}

    def test_with_editable(self, invoice):
        committed = invoice.with_editable({"vendor": "Globex"})

        assert committed.extracted_data == {"vendor": "Globex"}
        assert committed.status == InvoiceStatus.FLAGGED

    def test_summary(self, invoice):
        summary = invoice.summary()

        assert summary["vendor"] == "ACME"
        assert summary["amount"] == "EUR 120.5"
        assert summary["invoice_number"] == "N/A"
        assert summary["invoice_date"] == "N/A"
        assert summary["status"] == "flagged"

    def test_summary_without_extraction(self):
        summary = Invoice.from_row({"id": "1"}).summary()

        assert summary["amount"] == "N/A"
        assert summary["vendor"] == "N/A"
        assert summary["status"] == "uploaded"


class TestFieldConfiguration:
    """Tests for FieldConfiguration."""

    def test_editable_values(self):
        field = FieldConfiguration.from_row({
            "id": "f1",
            "field_name": "vendor",
            "display_name": "Vendor",
            "field_type": "text",
            "is_required": True,
            "prompt_instruction": None,
        })

        assert field.editable_values() == {
            "display_name": "Vendor",
            "field_type": "text",
            "is_required": True,
            "prompt_instruction": None,
        }

    def test_empty_prompt_committed_as_null(self):
        payload = FieldConfiguration.commit_payload({"display_name": "Vendor", "prompt_instruction": ""})

        assert payload == {"display_name": "Vendor", "prompt_instruction": None}

    def test_commit_payload_ignores_non_editable(self):
        payload = FieldConfiguration.commit_payload({"field_name": "x", "is_required": False})

        assert payload == {"is_required": False}


class TestIntegrationLogEntry:
    """Tests for IntegrationLogEntry outcome."""

    @pytest.mark.parametrize(
        "row,outcome",
        [
            ({"status_code": 200}, "success"),
            ({"status_code": 204}, "success"),
            ({"status_code": 500}, "pending"),
            ({"status_code": None}, "pending"),
            ({"status_code": 200, "error_message": "timeout"}, "failed"),
            ({"error_message": "refused"}, "failed"),
        ],
    )
    def test_outcome(self, row, outcome):
        entry = IntegrationLogEntry.from_row({"id": "s1", "invoice_id": "i1", **row})

        assert entry.outcome == outcome
