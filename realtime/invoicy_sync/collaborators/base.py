"""
Boundaries of the external collaborators the engine depends on.

The engine never talks to the backend directly. It goes through:
- AuthProvider: who is looking (or nobody)
- BulkFetcher: initial ordered batch for a view
- Committer: persist a partial update of one row
- Uploader: hand documents to the extraction pipeline

Invariants:
    - Fetch failures raise FetchError, commit failures raise CommitError
    - The current user is read once per view activation and passed
      explicitly; nothing holds it globally
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from ..stream.base import RowFilter


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated user a view is activated for.

    Attributes:
        id: User id; used to build row filters
        email: Optional email for display and logging
    """

    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class OrderBy:
    """Ordering for a bulk fetch."""

    column: str = "created_at"
    descending: bool = True

    def to_param(self) -> str:
        return f"{self.column}.{'desc' if self.descending else 'asc'}"


@dataclass(frozen=True)
class UploadDocument:
    """One document to upload.

    Attributes:
        filename: Name sent to the backend
        content: Raw bytes
        content_type: MIME type
    """

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class UploadReceipt:
    """Backend acceptance status for one uploaded document.

    Attributes:
        filename: Document name
        status: ``pending`` when accepted, otherwise an error code
        invoice_id: Id of the created invoice row, if reported
        detail: Backend message for rejected documents
    """

    filename: str
    status: str
    invoice_id: Optional[str] = None
    detail: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status == "pending"


@runtime_checkable
class AuthProvider(Protocol):
    async def current_user(self) -> CurrentUser | None:
        """Return the signed-in user, or None when unauthenticated."""
        ...


@runtime_checkable
class BulkFetcher(Protocol):
    async def fetch(
        self,
        source: str,
        row_filter: RowFilter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return an ordered batch of rows.

        Raises:
            FetchError: If the batch cannot be fetched
        """
        ...


@runtime_checkable
class Committer(Protocol):
    async def commit(
        self,
        source: str,
        key: str,
        partial: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Persist a partial update and return the stored row if known.

        Raises:
            CommitError: If the update was not persisted
        """
        ...


@runtime_checkable
class Uploader(Protocol):
    async def upload(
        self,
        documents: Sequence[UploadDocument],
        owner_id: str,
    ) -> list[UploadReceipt]:
        """Upload documents on behalf of an owner.

        Raises:
            UploadError: If the request failed as a whole
        """
        ...
