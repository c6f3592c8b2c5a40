"""
Invoicy Sync - Main entry point.

This module wires the engine together:
- Change feed (Kafka or in-memory)
- Data client (REST, or in-memory tables alongside the in-memory feed)
- Subscription hub and lifecycle manager
- Dashboard HTTP API (served by uvicorn)

Usage:
    python -m realtime.invoicy_sync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The change feed is connected before any view can be activated
    - stop() closes every subscription before the feed
    - The current user is never stored on the engine

How to change safely:
    - New collaborators are created in start() and closed in stop()
    - Test the shutdown sequence with active views
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, Sequence
from typing import Any, Optional

import json_log_formatter
import uvicorn

from .collaborators import (
    CurrentUser,
    InMemoryDataSource,
    RestDataClient,
    UploadClient,
    UploadDocument,
    Uploader,
    UploadReceipt,
    accepted_documents,
)
from .config import EngineConfig
from .lifecycle import LifecycleManager, SubscriptionHub, ViewActivation, ViewDefinition, build_views
from .models import FieldConfiguration
from .stream import ChangeFeed, InMemoryChangeFeed, create_change_feed

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class SyncEngine:
    """Sync engine orchestrator.

    Owns the change feed, the data and upload clients, and the
    lifecycle manager that views are activated through.

    Attributes:
        config: Engine configuration
        feed: Change feed
        data: Bulk fetch / commit collaborator
        uploader: Upload collaborator
        hub: Subscription hub
        manager: View lifecycle manager
        views: View definitions by name

    Example:
        >>> engine = SyncEngine()
        >>> await engine.start()
        >>> activation = await engine.activate("invoice_list", user)
        >>> await engine.stop()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        feed: ChangeFeed | None = None,
        data: Any = None,
        uploader: Uploader | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self.feed = feed
        self.data = data
        self.uploader = uploader
        self.hub: SubscriptionHub | None = None
        self.manager: LifecycleManager | None = None
        self.views: dict[str, ViewDefinition] = build_views(self.config.buffers)
        self._owned: list[Any] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Connect the change feed and build the collaborators."""
        if self._running:
            return

        self.config.validate()
        self.config.log_config()

        if self.feed is None:
            self.feed = create_change_feed(self.config)
        await self.feed.connect()

        if self.data is None:
            if isinstance(self.feed, InMemoryChangeFeed):
                self.data = InMemoryDataSource(self.feed)
            else:
                self.data = RestDataClient(self.config.rest)
                self._owned.append(self.data)

        if self.uploader is None:
            if isinstance(self.data, InMemoryDataSource):
                self.uploader = self.data
            else:
                self.uploader = UploadClient(self.config.upload)
                self._owned.append(self.uploader)

        self.hub = SubscriptionHub(self.feed)
        self.manager = LifecycleManager(self.hub, self.data)
        self._running = True
        logger.info(
            "Sync engine started",
            extra={
                "feed_backend": self.config.feed_backend.value,
                "views": sorted(self.views),
            },
        )

    async def stop(self) -> None:
        """Tear down every view, then the feed and the clients."""
        if not self._running:
            return

        logger.info("Stopping sync engine")
        if self.manager is not None:
            await self.manager.deactivate_all()
        if self.hub is not None:
            await self.hub.close_all()
        if self.feed is not None:
            await self.feed.close()
        for client in self._owned:
            await client.close()
        self._owned.clear()

        self._running = False
        logger.info("Sync engine stopped")

    def _require_manager(self) -> LifecycleManager:
        if self.manager is None:
            raise RuntimeError("Sync engine is not started")
        return self.manager

    async def activate(
        self,
        view_name: str,
        user: CurrentUser | None,
        params: Mapping[str, str] | None = None,
    ) -> ViewActivation:
        """Activate a named view for a user.

        Raises:
            KeyError: If no view has that name
        """
        return await self._require_manager().activate(self.views[view_name], user, params)

    async def deactivate(self, view_id: str) -> bool:
        return await self._require_manager().deactivate(view_id)

    async def upload(
        self,
        documents: Sequence[UploadDocument],
        user: CurrentUser,
    ) -> list[UploadReceipt]:
        """Upload the image documents among ``documents`` for a user."""
        if self.uploader is None:
            raise RuntimeError("Sync engine is not started")
        kept = accepted_documents(documents)
        if not kept:
            return []
        return await self.uploader.upload(kept, user.id)

    async def create_field_configuration(self, row: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        values = dict(row)
        if not values.get("prompt_instruction"):
            values["prompt_instruction"] = None
        return await self.data.insert(FieldConfiguration.source, values)

    async def delete_field_configuration(self, key: str) -> None:
        await self.data.delete(FieldConfiguration.source, key)

    @property
    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        manager = self.manager
        return {
            "running": self._running,
            "feed_backend": self.config.feed_backend.value,
            "feed_connected": bool(self.feed and self.feed.is_connected),
            "active_views": manager.active_views if manager else [],
            "open_subscriptions": self.hub.open_count if self.hub else 0,
        }


def main() -> None:
    """Main entry point."""
    from .api import Settings, create_app

    # Load configuration
    try:
        config = EngineConfig.from_env()
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    settings = Settings()
    app = create_app(engine=SyncEngine(config), settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
