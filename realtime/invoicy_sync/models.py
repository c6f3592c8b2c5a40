"""
Entity types for watched rows.

Every row received from the remote database becomes an immutable Entity.
Payload values are restricted to a closed set of kinds so that equality
and serialization of merged state stay well defined:
- str, int, float, bool, None
- mappings and sequences of the above (frozen to read-only views)

Invariants:
    - Entities are never mutated in place; updates produce new instances
    - Payload mappings are read-only (MappingProxyType)
    - Remote-only fields (status, confidence, validation errors) are
      exposed but never part of an entity's editable values

How to change safely:
    - New tables need an Entity subclass with a ``source`` name
    - Keep ``editable_values`` and ``commit_payload`` symmetric
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar

SCALAR_KINDS = (str, int, float, bool, type(None))


def freeze_value(value: Any) -> Any:
    """Convert a decoded JSON value into its immutable form.

    Args:
        value: Value taken from a row payload.

    Returns:
        The scalar itself, a read-only mapping, or a tuple.

    Raises:
        ValueError: If the value (or a nested value) has an unsupported kind.
    """
    if isinstance(value, SCALAR_KINDS):
        return value
    if isinstance(value, Mapping):
        frozen = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"Payload keys must be strings, got {type(key).__name__}")
            frozen[key] = freeze_value(item)
        return MappingProxyType(frozen)
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(item) for item in value)
    raise ValueError(f"Unsupported payload value kind: {type(value).__name__}")


def thaw_value(value: Any) -> Any:
    """Inverse of freeze_value, producing plain dicts and lists."""
    if isinstance(value, Mapping):
        return {key: thaw_value(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw_value(item) for item in value]
    return value


def freeze_payload(row: Mapping[str, Any]) -> Mapping[str, Any]:
    """Freeze a whole row into a read-only payload mapping."""
    frozen = freeze_value(row)
    if not isinstance(frozen, Mapping):
        raise ValueError("Row payload must be a mapping")
    return frozen


class InvoiceStatus(str, Enum):
    """Processing status of an invoice, driven by the remote pipeline."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    VALIDATED = "validated"
    FLAGGED = "flagged"
    INTEGRATED = "integrated"


class FieldType(str, Enum):
    """Value type of a configured extraction field."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    CURRENCY = "currency"


@dataclass(frozen=True)
class Entity:
    """A watched row.

    Attributes:
        id: Globally unique key
        payload: Read-only mapping of every column of the row
        created_at: Creation timestamp; used only to order the initial load
    """

    id: str
    payload: Mapping[str, Any]
    created_at: str | None = None

    source: ClassVar[str] = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Entity:
        """Build an entity from a decoded row.

        Raises:
            ValueError: If the row has no id or carries unsupported values.
        """
        if not isinstance(row, Mapping):
            raise ValueError(f"Row must be a mapping, got {type(row).__name__}")
        raw_id = row.get("id")
        if raw_id is None or raw_id == "":
            raise ValueError("Row has no id")
        created_at = row.get("created_at")
        return cls(
            id=str(raw_id),
            payload=freeze_payload(row),
            created_at=str(created_at) if created_at is not None else None,
        )

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        """Plain, JSON-serializable copy of the payload."""
        return thaw_value(self.payload)

    def with_changes(self, changes: Mapping[str, Any]) -> Entity:
        """Return a copy with some payload columns replaced."""
        merged = dict(self.payload)
        merged.update(changes)
        return type(self)(
            id=self.id,
            payload=freeze_payload(merged),
            created_at=self.created_at,
        )

    def editable_values(self) -> dict[str, Any]:
        """Values a user may edit locally. Empty for read-only entities."""
        return {}

    @classmethod
    def commit_payload(cls, staged: Mapping[str, Any]) -> dict[str, Any]:
        """Partial payload sent to the commit collaborator for staged values."""
        return {key: thaw_value(value) for key, value in staged.items()}

    def with_editable(self, staged: Mapping[str, Any]) -> Entity:
        """Entity as it looks once the staged values are committed."""
        return self.with_changes(self.commit_payload(staged))


class Invoice(Entity):
    """An uploaded invoice and its extraction results."""

    source: ClassVar[str] = "invoices"

    @property
    def status(self) -> InvoiceStatus:
        return InvoiceStatus(self.payload.get("status", InvoiceStatus.UPLOADED.value))

    @property
    def user_id(self) -> str | None:
        return self.payload.get("user_id")

    @property
    def extracted_data(self) -> Mapping[str, Any]:
        return self.payload.get("extracted_data") or MappingProxyType({})

    @property
    def confidence_scores(self) -> Mapping[str, float]:
        return self.payload.get("confidence_scores") or MappingProxyType({})

    @property
    def validation_errors(self) -> Mapping[str, str]:
        return self.payload.get("validation_errors") or MappingProxyType({})

    def editable_values(self) -> dict[str, Any]:
        return dict(self.extracted_data)

    @classmethod
    def commit_payload(cls, staged: Mapping[str, Any]) -> dict[str, Any]:
        return {"extracted_data": {key: thaw_value(value) for key, value in staged.items()}}

    def summary(self) -> dict[str, Any]:
        """Columns shown in the invoice list, "N/A" where nothing was extracted."""
        data = self.extracted_data
        amount = data.get("total_amount")
        if amount:
            currency = data.get("currency") or ""
            amount_text = f"{currency} {amount}".strip()
        else:
            amount_text = "N/A"
        return {
            "id": self.id,
            "invoice_number": data.get("invoice_number") or "N/A",
            "vendor": data.get("vendor") or "N/A",
            "amount": amount_text,
            "invoice_date": data.get("invoice_date") or "N/A",
            "status": self.payload.get("status", InvoiceStatus.UPLOADED.value),
        }


class FieldConfiguration(Entity):
    """Configuration of one field the extraction pipeline populates."""

    source: ClassVar[str] = "field_configurations"
    EDITABLE: ClassVar[tuple[str, ...]] = (
        "display_name",
        "field_type",
        "is_required",
        "prompt_instruction",
    )

    @property
    def field_name(self) -> str:
        return self.payload.get("field_name", "")

    @property
    def display_name(self) -> str:
        return self.payload.get("display_name", "")

    @property
    def field_type(self) -> FieldType:
        return FieldType(self.payload.get("field_type", FieldType.TEXT.value))

    @property
    def is_required(self) -> bool:
        return bool(self.payload.get("is_required", False))

    @property
    def prompt_instruction(self) -> str | None:
        return self.payload.get("prompt_instruction")

    def editable_values(self) -> dict[str, Any]:
        return {name: self.payload.get(name) for name in self.EDITABLE}

    @classmethod
    def commit_payload(cls, staged: Mapping[str, Any]) -> dict[str, Any]:
        payload = {name: thaw_value(staged[name]) for name in cls.EDITABLE if name in staged}
        if "prompt_instruction" in payload and not payload["prompt_instruction"]:
            payload["prompt_instruction"] = None
        return payload


class LogEntry(Entity):
    """System log line. Append-only."""

    source: ClassVar[str] = "system_logs"

    @property
    def invoice_id(self) -> str | None:
        return self.payload.get("invoice_id")

    @property
    def log_type(self) -> str:
        return self.payload.get("log_type", "")

    @property
    def message(self) -> str:
        return self.payload.get("message", "")

    @property
    def metadata(self) -> Mapping[str, Any] | None:
        return self.payload.get("log_metadata")


class IntegrationLogEntry(Entity):
    """Record of one SAP integration request. Append-only."""

    source: ClassVar[str] = "sap_logs"

    @property
    def invoice_id(self) -> str:
        return self.payload.get("invoice_id", "")

    @property
    def request_payload(self) -> Any:
        return self.payload.get("request_payload")

    @property
    def response_payload(self) -> Any:
        return self.payload.get("response_payload")

    @property
    def status_code(self) -> int | None:
        return self.payload.get("status_code")

    @property
    def error_message(self) -> str | None:
        return self.payload.get("error_message")

    @property
    def outcome(self) -> str:
        """``failed``, ``success`` or ``pending``.

        An error message wins over any status code.
        """
        if self.error_message:
            return "failed"
        code = self.status_code
        if isinstance(code, int) and 200 <= code < 300:
            return "success"
        return "pending"


ENTITY_TYPES: dict[str, type[Entity]] = {
    cls.source: cls for cls in (Invoice, FieldConfiguration, LogEntry, IntegrationLogEntry)
}
