"""
Document upload client.

Documents go to the extraction backend as one multipart request:

    POST {API_URL}/api/upload?user_id=<owner>
    files=<doc 1>, files=<doc 2>, ...

The backend answers with one status object per document. ``pending``
means the document was accepted and an invoice row will appear on the
change stream once extraction starts.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import UploadConfig
from ..errors import UploadError
from .base import UploadDocument, UploadReceipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadSummary:
    """Accepted vs failed counts of one upload."""

    accepted: int
    failed: int

    @property
    def total(self) -> int:
        return self.accepted + self.failed


def short_id() -> str:
    """Eight hex characters, enough to keep uploaded names distinct."""
    return uuid.uuid4().hex[:8]


def rename_with_short_id(filename: str, suffix: Optional[str] = None) -> str:
    """``scan.png`` -> ``scan_1a2b3c4d.png``."""
    suffix = suffix or short_id()
    stem, dot, extension = filename.rpartition(".")
    if not dot or not stem:
        return f"{filename}_{suffix}"
    return f"{stem}_{suffix}.{extension}"


def accepted_documents(documents: Iterable[UploadDocument]) -> list[UploadDocument]:
    """Keep image documents only, each renamed with a short id."""
    kept = []
    for document in documents:
        if not document.content_type.startswith("image/"):
            logger.debug("Skipping non-image document", extra={"document": document.filename})
            continue
        kept.append(
            UploadDocument(
                filename=rename_with_short_id(document.filename),
                content=document.content,
                content_type=document.content_type,
            )
        )
    return kept


def summarize_receipts(receipts: Iterable[UploadReceipt]) -> UploadSummary:
    accepted = failed = 0
    for receipt in receipts:
        if receipt.accepted:
            accepted += 1
        else:
            failed += 1
    return UploadSummary(accepted=accepted, failed=failed)


def _receipt_from_item(item: Any, fallback_name: str) -> UploadReceipt:
    if not isinstance(item, dict):
        return UploadReceipt(filename=fallback_name, status="invalid_response")
    known = {"filename", "status", "invoice_id", "id", "detail", "error"}
    return UploadReceipt(
        filename=str(item.get("filename") or fallback_name),
        status=str(item.get("status") or "unknown"),
        invoice_id=item.get("invoice_id") or item.get("id"),
        detail=item.get("detail") or item.get("error"),
        extra={k: v for k, v in item.items() if k not in known},
    )


class UploadClient:
    """Uploads documents to the extraction backend."""

    def __init__(
        self,
        config: UploadConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> UploadClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def upload(
        self,
        documents: Sequence[UploadDocument],
        owner_id: str,
    ) -> list[UploadReceipt]:
        """Upload documents for an owner.

        Returns:
            One receipt per document the backend reported on

        Raises:
            UploadError: Transport failure or non-2xx response
        """
        if not documents:
            return []

        files = [
            ("files", (doc.filename, doc.content, doc.content_type)) for doc in documents
        ]
        try:
            response = await self._client.post(
                "/api/upload", params={"user_id": owner_id}, files=files
            )
        except httpx.RequestError as e:
            raise UploadError(f"Upload request failed: {e}") from e

        if response.is_error:
            raise UploadError(
                self._error_detail(response) or "Failed to upload invoices",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UploadError("Upload response was not JSON", status_code=response.status_code) from e
        if not isinstance(body, list):
            raise UploadError("Upload response was not a list", status_code=response.status_code)

        receipts = [
            _receipt_from_item(item, documents[i].filename if i < len(documents) else "")
            for i, item in enumerate(body)
        ]
        summary = summarize_receipts(receipts)
        logger.info(
            "Documents uploaded",
            extra={"owner_id": owner_id, "accepted": summary.accepted, "failed": summary.failed},
        )
        return receipts

    @staticmethod
    def _error_detail(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("detail"):
            return str(body["detail"])
        return None
