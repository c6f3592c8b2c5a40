"""
In-memory data source.

A miniature remote database: tables of rows that implement the
BulkFetcher, Committer and Uploader boundaries, and publish every
mutation to an InMemoryChangeFeed the way change-data-capture would.

Useful for:
- Integration tests of views, edit sessions and the API
- Local development without a backend

Not suitable for:
- Anything persistent (rows live in the process only)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import OrderedDict
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import CommitError, FetchError
from ..models import InvoiceStatus
from ..stream.base import ChangeKind, RowFilter
from ..stream.memory import InMemoryChangeFeed
from .base import OrderBy, UploadDocument, UploadReceipt

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryDataSource:
    """Tables held in memory, mirrored onto a change feed.

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> source = InMemoryDataSource(feed)
        >>> source.seed("invoices", [{"id": "1", "user_id": "u1"}])
        >>> await source.commit("invoices", "1", {"status": "validated"})
    """

    def __init__(self, feed: Optional[InMemoryChangeFeed] = None) -> None:
        self.feed = feed
        self._tables: dict[str, OrderedDict[str, dict[str, Any]]] = {}
        self._fetch_failures: dict[str, Exception] = {}
        self._commit_failures: dict[str, Exception] = {}
        self.fetch_gate: Optional[asyncio.Event] = None
        self.fetch_calls: list[tuple[str, Optional[RowFilter]]] = []
        self.commit_calls: list[tuple[str, str, dict[str, Any]]] = []

    def table(self, source: str) -> OrderedDict[str, dict[str, Any]]:
        return self._tables.setdefault(source, OrderedDict())

    def rows(self, source: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.table(source).values()]

    def row(self, source: str, key: str) -> Optional[dict[str, Any]]:
        row = self.table(source).get(key)
        return copy.deepcopy(row) if row is not None else None

    def seed(self, source: str, rows: Iterable[Mapping[str, Any]]) -> None:
        """Insert rows without publishing change events."""
        table = self.table(source)
        for row in rows:
            stored = self._prepare(row)
            table[stored["id"]] = stored

    def _prepare(self, row: Mapping[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(dict(row))
        stored.setdefault("id", str(uuid.uuid4()))
        stored["id"] = str(stored["id"])
        stored.setdefault("created_at", _now())
        return stored

    def _publish(
        self,
        source: str,
        kind: ChangeKind,
        record: Optional[Mapping[str, Any]] = None,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.feed is not None:
            self.feed.publish(
                source,
                kind,
                record=copy.deepcopy(record) if record is not None else None,
                old_record=copy.deepcopy(old_record) if old_record is not None else None,
            )

    # Failure injection

    def fail_next_fetch(self, source: str, error: Optional[Exception] = None) -> None:
        self._fetch_failures[source] = error or FetchError(f"Fetching {source} failed", source=source)

    def fail_next_commit(self, source: str, error: Optional[Exception] = None) -> None:
        self._commit_failures[source] = error or CommitError(f"Updating {source} failed", source=source)

    # BulkFetcher

    async def fetch(
        self,
        source: str,
        row_filter: RowFilter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append((source, row_filter))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()

        failure = self._fetch_failures.pop(source, None)
        if failure is not None:
            raise failure

        rows = [row for row in self.table(source).values() if row_filter is None or row_filter.matches(row)]
        if order_by is not None:
            rows.sort(
                key=lambda r: str(r.get(order_by.column) or ""),
                reverse=order_by.descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(row) for row in rows]

    # Committer

    async def commit(
        self,
        source: str,
        key: str,
        partial: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        self.commit_calls.append((source, key, dict(partial)))

        failure = self._commit_failures.pop(source, None)
        if failure is not None:
            raise failure

        table = self.table(source)
        if key not in table:
            raise CommitError(f"{source}/{key} does not exist", source=source, key=key, status_code=404)

        old = copy.deepcopy(table[key])
        table[key].update(copy.deepcopy(dict(partial)))
        updated = copy.deepcopy(table[key])
        self._publish(source, ChangeKind.UPDATE, record=updated, old_record=old)
        return updated

    # Row lifecycle

    async def insert(self, source: str, row: Mapping[str, Any]) -> dict[str, Any] | None:
        stored = self._prepare(row)
        table = self.table(source)
        if stored["id"] in table:
            raise CommitError(f"{source}/{stored['id']} already exists", source=source, key=stored["id"], status_code=409)
        table[stored["id"]] = stored
        self._publish(source, ChangeKind.INSERT, record=stored)
        return copy.deepcopy(stored)

    async def update(self, source: str, key: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Change a row as a remote actor would (e.g. the extraction pipeline)."""
        table = self.table(source)
        if key not in table:
            raise KeyError(f"{source}/{key}")
        old = copy.deepcopy(table[key])
        table[key].update(copy.deepcopy(dict(changes)))
        self._publish(source, ChangeKind.UPDATE, record=table[key], old_record=old)
        return copy.deepcopy(table[key])

    async def delete(self, source: str, key: str) -> None:
        old = self.table(source).pop(key, None)
        if old is None:
            return
        self._publish(source, ChangeKind.DELETE, old_record=old)

    # Uploader

    async def upload(
        self,
        documents: Sequence[UploadDocument],
        owner_id: str,
    ) -> list[UploadReceipt]:
        """Create one ``uploaded`` invoice per document."""
        receipts = []
        for document in documents:
            row = await self.insert(
                "invoices",
                {
                    "user_id": owner_id,
                    "image_url": document.filename,
                    "status": InvoiceStatus.UPLOADED.value,
                    "extracted_data": {},
                    "confidence_scores": {},
                    "validation_errors": {},
                },
            )
            receipts.append(
                UploadReceipt(
                    filename=document.filename,
                    status="pending",
                    invoice_id=row["id"] if row else None,
                )
            )
        logger.debug("In-memory upload", extra={"owner_id": owner_id, "documents": len(documents)})
        return receipts
