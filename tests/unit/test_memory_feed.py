"""
Unit tests for the in-memory change feed.

Tests cover:
- Connection lifecycle
- Fan-out to open streams
- Stream close semantics
- Failure injection
"""

import asyncio

import pytest

from realtime.invoicy_sync.stream import ChangeKind, FeedConnectionError, InMemoryChangeFeed


async def next_event(stream):
    iterator = stream.__aiter__()
    return await asyncio.wait_for(iterator.__anext__(), timeout=1)


class TestInMemoryChangeFeed:
    """Tests for InMemoryChangeFeed."""

    @pytest.fixture
    def feed(self):
        return InMemoryChangeFeed()

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, feed):
        assert not feed.is_connected

        await feed.connect()
        assert feed.is_connected

        await feed.close()
        assert not feed.is_connected

    @pytest.mark.asyncio
    async def test_open_requires_connection(self, feed):
        with pytest.raises(FeedConnectionError):
            await feed.open_stream("invoices")

    @pytest.mark.asyncio
    async def test_publish_reaches_open_stream(self, feed):
        await feed.connect()
        stream = await feed.open_stream("invoices")

        feed.publish("invoices", ChangeKind.INSERT, {"id": "1"})

        event = await next_event(stream)
        assert event.kind == ChangeKind.INSERT
        assert event.key == "1"

    @pytest.mark.asyncio
    async def test_events_only_reach_their_table(self, feed):
        await feed.connect()
        invoices = await feed.open_stream("invoices")
        logs = await feed.open_stream("system_logs")

        feed.publish("system_logs", "insert", {"id": "l1"})
        feed.publish("invoices", "insert", {"id": "i1"})

        assert (await next_event(invoices)).key == "i1"
        assert (await next_event(logs)).key == "l1"

    @pytest.mark.asyncio
    async def test_events_before_open_are_not_delivered(self, feed):
        await feed.connect()
        feed.publish("invoices", "insert", {"id": "early"})
        stream = await feed.open_stream("invoices")

        feed.publish("invoices", "insert", {"id": "late"})

        assert (await next_event(stream)).key == "late"

    @pytest.mark.asyncio
    async def test_publish_order_preserved(self, feed):
        await feed.connect()
        stream = await feed.open_stream("invoices")

        for i in range(5):
            feed.publish("invoices", "update", {"id": "1", "n": i})

        received = []
        iterator = stream.__aiter__()
        for _ in range(5):
            received.append((await iterator.__anext__()).row["n"])
        assert received == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_close_stream_detaches_and_ends_iteration(self, feed):
        await feed.connect()
        stream = await feed.open_stream("invoices")
        assert feed.open_stream_count("invoices") == 1

        await stream.close()
        await stream.close()

        assert stream.closed
        assert feed.open_stream_count() == 0
        events = [event async for event in stream]
        assert events == []

    @pytest.mark.asyncio
    async def test_close_feed_closes_streams(self, feed):
        await feed.connect()
        stream = await feed.open_stream("invoices")

        await feed.close()

        assert stream.closed

    @pytest.mark.asyncio
    async def test_injected_failure_applies_once(self, feed):
        await feed.connect()
        feed.inject_failure(FeedConnectionError("boom"), source="invoices")

        with pytest.raises(FeedConnectionError):
            await feed.open_stream("invoices")

        stream = await feed.open_stream("invoices")
        assert not stream.closed

    @pytest.mark.asyncio
    async def test_published_events_recorded(self, feed):
        await feed.connect()

        event = feed.publish("invoices", "delete", old_record={"id": "1"})

        assert feed.published == [event]
