"""
Tests for RestDataClient against a mocked PostgREST-style backend.

Tests cover:
- Query parameters of bulk fetches
- Auth headers
- Commit, insert and delete requests
- Mapping of status and transport failures to typed errors
"""

import json

import httpx
import pytest

from realtime.invoicy_sync.collaborators import OrderBy, RestDataClient
from realtime.invoicy_sync.config import RestConfig
from realtime.invoicy_sync.errors import CommitError, FetchError
from realtime.invoicy_sync.stream import RowFilter

CONFIG = RestConfig(base_url="https://db.example.test/rest/v1", api_key="anon-key")


def make_client(handler, **kwargs) -> RestDataClient:
    return RestDataClient(CONFIG, transport=httpx.MockTransport(handler), **kwargs)


class TestFetch:
    """Tests for RestDataClient.fetch."""

    @pytest.mark.asyncio
    async def test_fetch_sends_filter_order_and_limit(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": "1"}], request=request)

        async with make_client(handler) as client:
            rows = await client.fetch(
                "invoices", RowFilter.eq("user_id", "u1"), OrderBy(), limit=50
            )

        assert rows == [{"id": "1"}]
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/invoices"
        assert request.url.params["select"] == "*"
        assert request.url.params["user_id"] == "eq.u1"
        assert request.url.params["order"] == "created_at.desc"
        assert request.url.params["limit"] == "50"

    @pytest.mark.asyncio
    async def test_fetch_without_filter(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[], request=request)

        async with make_client(handler) as client:
            assert await client.fetch("field_configurations") == []

        assert dict(seen[0].url.params) == {"select": "*"}

    @pytest.mark.asyncio
    async def test_auth_headers(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[], request=request)

        async with make_client(handler, access_token="user-jwt") as client:
            await client.fetch("invoices")

        assert seen[0].headers["apikey"] == "anon-key"
        assert seen[0].headers["Authorization"] == "Bearer user-jwt"

    @pytest.mark.asyncio
    async def test_status_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable", request=request)

        async with make_client(handler) as client:
            with pytest.raises(FetchError) as exc_info:
                await client.fetch("invoices")

        assert exc_info.value.status_code == 503
        assert exc_info.value.source == "invoices"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(FetchError) as exc_info:
                await client.fetch("invoices")

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>", request=request)

        async with make_client(handler) as client:
            with pytest.raises(FetchError):
                await client.fetch("invoices")

    @pytest.mark.asyncio
    async def test_non_list_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "nope"}, request=request)

        async with make_client(handler) as client:
            with pytest.raises(FetchError):
                await client.fetch("invoices")


class TestWrites:
    """Tests for commit, insert and delete."""

    @pytest.mark.asyncio
    async def test_commit_patches_one_row(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(200, json=[{"id": "7", **body}], request=request)

        async with make_client(handler) as client:
            row = await client.commit("invoices", "7", {"extracted_data": {"vendor": "ACME"}})

        request = seen[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.7"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {"extracted_data": {"vendor": "ACME"}}
        assert row == {"id": "7", "extracted_data": {"vendor": "ACME"}}

    @pytest.mark.asyncio
    async def test_commit_of_missing_row(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[], request=request)

        async with make_client(handler) as client:
            with pytest.raises(CommitError) as exc_info:
                await client.commit("invoices", "7", {"status": "validated"})

        assert exc_info.value.status_code == 404
        assert exc_info.value.key == "7"

    @pytest.mark.asyncio
    async def test_commit_without_representation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204, request=request)

        async with make_client(handler) as client:
            assert await client.commit("invoices", "7", {"status": "validated"}) is None

    @pytest.mark.asyncio
    async def test_commit_status_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"message": "denied"}, request=request)

        async with make_client(handler) as client:
            with pytest.raises(CommitError) as exc_info:
                await client.commit("invoices", "7", {"status": "validated"})

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_commit_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(CommitError):
                await client.commit("invoices", "7", {"status": "validated"})

    @pytest.mark.asyncio
    async def test_insert(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            return httpx.Response(201, json=[{"id": "f1", **json.loads(request.content)}], request=request)

        async with make_client(handler) as client:
            row = await client.insert("field_configurations", {"field_name": "vendor"})

        assert row == {"id": "f1", "field_name": "vendor"}

    @pytest.mark.asyncio
    async def test_delete(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204, request=request)

        async with make_client(handler) as client:
            await client.delete("field_configurations", "f1")

        assert seen[0].method == "DELETE"
        assert seen[0].url.params["id"] == "eq.f1"

    @pytest.mark.asyncio
    async def test_delete_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, request=request)

        async with make_client(handler) as client:
            with pytest.raises(CommitError):
                await client.delete("field_configurations", "f1")
