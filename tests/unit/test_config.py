"""
Unit tests for engine configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation
"""

import pytest

from realtime.invoicy_sync.config import (
    BufferConfig,
    EngineConfig,
    FeedBackend,
    KafkaConfig,
    RestConfig,
)
from realtime.invoicy_sync.stream import InMemoryChangeFeed, KafkaChangeFeed, create_change_feed


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.feed_backend == FeedBackend.KAFKA
        assert config.buffers.log_capacity == 100
        assert config.buffers.initial_fetch_limit == 100
        assert config.kafka.topic_for("invoices") == "invoicy.public.invoices"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CHANGE_FEED_BACKEND", "memory")
        monkeypatch.setenv("REST_URL", "http://db.test/rest/v1")
        monkeypatch.setenv("REST_API_KEY", "secret")
        monkeypatch.setenv("LOG_BUFFER_CAPACITY", "50")
        monkeypatch.setenv("INITIAL_FETCH_LIMIT", "50")
        monkeypatch.setenv("KAFKA_TOPIC_PREFIX", "cdc")

        config = EngineConfig.from_env()

        assert config.feed_backend == FeedBackend.MEMORY
        assert config.rest.base_url == "http://db.test/rest/v1"
        assert config.rest.api_key == "secret"
        assert config.buffers.log_capacity == 50
        assert config.kafka.topic_for("sap_logs") == "cdc.sap_logs"

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("CHANGE_FEED_BACKEND", "carrier-pigeon")

        with pytest.raises(ValueError, match="CHANGE_FEED_BACKEND"):
            EngineConfig.from_env()

    def test_capacity_must_be_positive(self):
        config = EngineConfig(buffers=BufferConfig(log_capacity=0))

        with pytest.raises(ValueError, match="LOG_BUFFER_CAPACITY"):
            config.validate()

    def test_kafka_requires_brokers(self):
        config = EngineConfig(kafka=KafkaConfig(brokers=""))

        with pytest.raises(ValueError, match="KAFKA_BROKERS"):
            config.validate()

    def test_rest_url_required(self):
        config = EngineConfig(feed_backend=FeedBackend.MEMORY, rest=RestConfig(base_url=""))

        with pytest.raises(ValueError, match="REST_URL"):
            config.validate()

    def test_log_config_does_not_leak_secrets(self, caplog):
        config = EngineConfig(rest=RestConfig(api_key="top-secret"))

        with caplog.at_level("INFO"):
            config.log_config()

        for record in caplog.records:
            assert "top-secret" not in str(record.__dict__)


class TestCreateChangeFeed:
    """Tests for the change feed factory."""

    def test_memory(self):
        feed = create_change_feed(EngineConfig(feed_backend=FeedBackend.MEMORY))

        assert isinstance(feed, InMemoryChangeFeed)

    def test_kafka(self):
        feed = create_change_feed(EngineConfig(feed_backend=FeedBackend.KAFKA))

        assert isinstance(feed, KafkaChangeFeed)
        assert not feed.is_connected
