"""
REST data client for a PostgREST-compatible backend.

Implements BulkFetcher and Committer over HTTP:

    fetch   GET    /<table>?select=*&<col>=eq.<v>&order=<col>.desc&limit=<n>
    commit  PATCH  /<table>?id=eq.<key>        (Prefer: return=representation)
    insert  POST   /<table>                    (Prefer: return=representation)
    delete  DELETE /<table>?id=eq.<key>

Invariants:
    - Transport and status failures map to FetchError / CommitError
    - The API key is sent as ``apikey`` and as a bearer token, never logged
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

import httpx

from ..config import RestConfig
from ..errors import CommitError, FetchError
from ..stream.base import RowFilter
from .base import OrderBy

logger = logging.getLogger(__name__)


class RestDataClient:
    """Async client for the tables behind the dashboard.

    Example:
        >>> async with RestDataClient(RestConfig.from_env()) as client:
        ...     rows = await client.fetch("invoices", RowFilter.eq("user_id", "u1"))
    """

    def __init__(
        self,
        config: RestConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        access_token: Optional[str] = None,
    ) -> None:
        self.config = config
        headers = {"Accept": "application/json"}
        if config.api_key:
            headers["apikey"] = config.api_key
        token = access_token or config.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> RestDataClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(
        self,
        source: str,
        row_filter: RowFilter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", "*")]
        if row_filter is not None:
            params.append(row_filter.to_param())
        if order_by is not None:
            params.append(("order", order_by.to_param()))
        if limit is not None:
            params.append(("limit", str(limit)))

        try:
            response = await self._client.get(f"/{source}", params=params)
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Fetching {source} failed with status {e.response.status_code}",
                source=source,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise FetchError(f"Fetching {source} failed: {e}", source=source) from e
        except ValueError as e:
            raise FetchError(f"Fetching {source} returned invalid JSON", source=source) from e

        if not isinstance(rows, list):
            raise FetchError(f"Fetching {source} returned {type(rows).__name__}, expected a list", source=source)

        logger.debug(
            "Fetched rows",
            extra={"source": source, "rows": len(rows), "filter": str(row_filter) if row_filter else None},
        )
        return rows

    async def commit(
        self,
        source: str,
        key: str,
        partial: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        try:
            response = await self._client.patch(
                f"/{source}",
                params={"id": f"eq.{key}"},
                json=dict(partial),
                headers={"Prefer": "return=representation"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CommitError(
                f"Updating {source}/{key} failed with status {e.response.status_code}",
                source=source,
                key=key,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise CommitError(f"Updating {source}/{key} failed: {e}", source=source, key=key) from e

        rows = self._representation(response)
        if rows == []:
            # PostgREST answers 200 with no rows when the filter matched nothing
            raise CommitError(f"{source}/{key} does not exist", source=source, key=key, status_code=404)
        logger.info("Committed update", extra={"source": source, "key": key, "fields": sorted(partial)})
        return rows[0] if rows else None

    async def insert(self, source: str, row: Mapping[str, Any]) -> dict[str, Any] | None:
        try:
            response = await self._client.post(
                f"/{source}",
                json=dict(row),
                headers={"Prefer": "return=representation"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CommitError(
                f"Inserting into {source} failed with status {e.response.status_code}",
                source=source,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise CommitError(f"Inserting into {source} failed: {e}", source=source) from e

        rows = self._representation(response)
        return rows[0] if rows else None

    async def delete(self, source: str, key: str) -> None:
        try:
            response = await self._client.delete(f"/{source}", params={"id": f"eq.{key}"})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CommitError(
                f"Deleting {source}/{key} failed with status {e.response.status_code}",
                source=source,
                key=key,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise CommitError(f"Deleting {source}/{key} failed: {e}", source=source, key=key) from e
        logger.info("Deleted row", extra={"source": source, "key": key})

    @staticmethod
    def _representation(response: httpx.Response) -> list[dict[str, Any]] | None:
        """Rows echoed back by the server, or None if it sent none."""
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return [body]
        if isinstance(body, list):
            return body
        return None
