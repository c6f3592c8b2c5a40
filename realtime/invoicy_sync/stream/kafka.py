"""
Kafka change feed implementation.

Row changes are published by the database's change-data-capture
connector as JSON envelopes, one topic per table:

    topic   invoicy.public.invoices
    value   {"type": "UPDATE", "table": "invoices",
             "record": {...}, "old_record": {...},
             "commit_timestamp": "2024-05-01T10:00:00Z"}

Invariants:
    - Each open stream owns its own consumer; streams never share offsets
    - Offsets are never committed; a live view only wants new changes
    - Undecodable messages are logged and skipped, never fatal

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep the envelope format in sync with the CDC connector
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaConnectionError, KafkaError

from ..config import KafkaConfig
from .base import (
    ChangeEvent,
    FeedConnectionError,
    FeedError,
    FeedSerializationError,
    RowFilter,
)

logger = logging.getLogger(__name__)


class KafkaChangeStream:
    """A change stream backed by one AIOKafkaConsumer."""

    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        source: str,
        topic: str,
        on_close: Callable[[KafkaChangeStream], None] | None = None,
    ) -> None:
        self.source = source
        self.topic = topic
        self._consumer = consumer
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        try:
            async for msg in self._consumer:
                if self._closed:
                    break
                try:
                    event = ChangeEvent.from_json(msg.value, source=self.source)
                except FeedSerializationError as e:
                    logger.warning(
                        f"Skipping undecodable change message: {e}",
                        extra={"topic": msg.topic, "partition": msg.partition, "offset": msg.offset},
                    )
                    continue
                yield event
        except KafkaError as e:
            if not self._closed:
                raise FeedError(f"Consumer error: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
        try:
            await self._consumer.stop()
        except Exception as e:
            logger.warning(f"Error closing consumer: {e}", extra={"topic": self.topic})
        logger.debug("Kafka change stream closed", extra={"topic": self.topic})


class KafkaChangeFeed:
    """Kafka implementation of the ChangeFeed protocol.

    Uses aiokafka consumers, one per open stream, each in its own
    consumer group so every view sees every change.

    Example:
        >>> feed = KafkaChangeFeed(KafkaConfig(brokers="localhost:9092"))
        >>> await feed.connect()
        >>> stream = await feed.open_stream("invoices")
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._connected = False
        self._streams: set[KafkaChangeStream] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Mark the feed usable.

        Consumers connect lazily in open_stream, so broker problems
        surface per stream.
        """
        self._connected = True
        logger.info("Kafka change feed ready", extra={"brokers": self.config.brokers})

    async def close(self) -> None:
        for stream in list(self._streams):
            await stream.close()
        self._streams.clear()
        self._connected = False
        logger.info("Kafka change feed closed")

    def _consumer_config(self) -> dict[str, Any]:
        consumer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "group_id": f"{self.config.consumer_group}-{uuid.uuid4().hex[:12]}",
            "auto_offset_reset": self.config.auto_offset_reset,
            "enable_auto_commit": False,
            "session_timeout_ms": 30000,
            "heartbeat_interval_ms": 10000,
        }

        # Add security settings
        if self.config.security_protocol != "PLAINTEXT":
            consumer_config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            consumer_config["sasl_mechanism"] = self.config.sasl_mechanism
            consumer_config["sasl_plain_username"] = self.config.sasl_username
            consumer_config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            consumer_config["ssl_cafile"] = self.config.ssl_cafile

        return consumer_config

    async def open_stream(
        self,
        source: str,
        row_filter: RowFilter | None = None,
    ) -> KafkaChangeStream:
        """Start a consumer on the table's topic.

        The row filter cannot be pushed to Kafka; subscribers apply it.

        Raises:
            FeedConnectionError: If the consumer cannot start
        """
        if not self._connected:
            raise FeedConnectionError("Not connected")

        topic = self.config.topic_for(source)
        consumer = AIOKafkaConsumer(topic, **self._consumer_config())
        try:
            await consumer.start()
        except (KafkaConnectionError, KafkaError, OSError) as e:
            try:
                await consumer.stop()
            except Exception:
                logger.debug("Consumer stop after failed start raised", exc_info=True)
            raise FeedConnectionError(f"Failed to subscribe to {topic}: {e}") from e

        stream = KafkaChangeStream(consumer, source, topic, on_close=self._streams.discard)
        self._streams.add(stream)
        logger.info(
            "Subscribed to Kafka topic",
            extra={"topic": topic, "source": source, "filter": str(row_filter)},
        )
        return stream
