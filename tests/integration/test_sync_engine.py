"""
Integration tests for SyncEngine.

Tests cover:
- Start/stop with the in-memory backend
- Shutdown with active views
- Upload filtering and field configuration writes
"""

import pytest

from realtime.invoicy_sync.collaborators import CurrentUser, InMemoryDataSource, UploadDocument
from realtime.invoicy_sync.config import EngineConfig, FeedBackend
from realtime.invoicy_sync.lifecycle import INVOICE_LIST, SYSTEM_STATUS
from realtime.invoicy_sync.main import SyncEngine

ALICE = CurrentUser(id="u1")


@pytest.fixture
async def engine():
    engine = SyncEngine(EngineConfig(feed_backend=FeedBackend.MEMORY))
    await engine.start()
    yield engine
    await engine.stop()


class TestSyncEngine:
    """Tests for SyncEngine."""

    @pytest.mark.asyncio
    async def test_start_uses_in_memory_collaborators(self, engine):
        assert engine.running
        assert isinstance(engine.data, InMemoryDataSource)
        assert engine.uploader is engine.data
        assert engine.stats["feed_connected"] is True

    @pytest.mark.asyncio
    async def test_views_are_registered(self, engine):
        assert set(engine.views) == {"invoice_list", "invoice_detail", "system_status", "field_settings"}

    @pytest.mark.asyncio
    async def test_stop_closes_active_views(self, engine):
        await engine.activate(INVOICE_LIST, ALICE)
        await engine.activate(SYSTEM_STATUS, ALICE)
        assert engine.stats["open_subscriptions"] == 3

        await engine.stop()

        assert engine.stats["open_subscriptions"] == 0
        assert engine.stats["active_views"] == []
        assert engine.stats["feed_connected"] is False

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, engine):
        await engine.start()
        await engine.stop()
        await engine.stop()

        assert not engine.running

    @pytest.mark.asyncio
    async def test_unknown_view(self, engine):
        with pytest.raises(KeyError):
            await engine.activate("nope", ALICE)

    @pytest.mark.asyncio
    async def test_activate_before_start(self):
        engine = SyncEngine(EngineConfig(feed_backend=FeedBackend.MEMORY))

        with pytest.raises(RuntimeError):
            await engine.activate(INVOICE_LIST, ALICE)

    @pytest.mark.asyncio
    async def test_upload_skips_non_images(self, engine):
        receipts = await engine.upload(
            [
                UploadDocument(filename="scan.jpg", content=b"x", content_type="image/jpeg"),
                UploadDocument(filename="doc.pdf", content=b"x", content_type="application/pdf"),
            ],
            ALICE,
        )

        assert len(receipts) == 1
        assert receipts[0].filename.startswith("scan_")
        assert receipts[0].accepted

    @pytest.mark.asyncio
    async def test_upload_nothing_acceptable(self, engine):
        receipts = await engine.upload(
            [UploadDocument(filename="doc.pdf", content=b"x", content_type="application/pdf")],
            ALICE,
        )

        assert receipts == []
        assert engine.data.rows("invoices") == []

    @pytest.mark.asyncio
    async def test_field_configuration_prompt_defaults_to_none(self, engine):
        row = await engine.create_field_configuration(
            {"field_name": "po", "display_name": "PO", "prompt_instruction": ""}
        )

        assert row["prompt_instruction"] is None

        await engine.delete_field_configuration(row["id"])
        assert engine.data.rows("field_configurations") == []
