"""
Configuration management for the sync engine.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set REST_URL and the change feed brokers
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep LOG_BUFFER_CAPACITY and INITIAL_FETCH_LIMIT aligned; the log
      views load exactly as many rows as they can hold
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class FeedBackend(Enum):
    """Supported change feed backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka change feed configuration.

    Change events for table ``invoices`` are read from topic
    ``<topic_prefix>.invoices``.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic_prefix: Prefix prepended to table names to form topic names
        consumer_group: Consumer group prefix; each subscription gets its own group
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        auto_offset_reset: Where a new subscription starts reading
    """

    brokers: str = "localhost:9092"
    topic_prefix: str = "invoicy.public"
    consumer_group: str = "invoicy-dashboard"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    # Live views only care about changes after they open
    auto_offset_reset: str = "latest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic_prefix=os.getenv("KAFKA_TOPIC_PREFIX", "invoicy.public"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "invoicy-dashboard"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "latest"),
        )

    def topic_for(self, source: str) -> str:
        """Topic carrying change events for a table."""
        return f"{self.topic_prefix}.{source}"


@dataclass(frozen=True)
class RestConfig:
    """Configuration for the REST data API (bulk fetch and commit).

    Attributes:
        base_url: Base URL of the PostgREST-compatible API
        api_key: API key sent as ``apikey`` and bearer token
        timeout_seconds: Per-request timeout
    """

    base_url: str = "http://localhost:54321/rest/v1"
    api_key: str | None = None
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> RestConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("REST_URL", "http://localhost:54321/rest/v1"),
            api_key=os.getenv("REST_API_KEY"),
            timeout_seconds=float(os.getenv("REST_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class UploadConfig:
    """Configuration for the document upload API.

    Attributes:
        api_url: Base URL of the upload backend
        timeout_seconds: Request timeout; uploads are slow
    """

    api_url: str = "http://localhost:8000"
    timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> UploadConfig:
        """Load configuration from environment variables."""
        return cls(
            api_url=os.getenv("API_URL", "http://localhost:8000"),
            timeout_seconds=float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "60")),
        )


@dataclass(frozen=True)
class BufferConfig:
    """Sizing of derived views.

    Attributes:
        log_capacity: Maximum entries retained per log buffer
        initial_fetch_limit: Maximum rows requested by a log view's bulk fetch
    """

    log_capacity: int = 100
    initial_fetch_limit: int = 100

    @classmethod
    def from_env(cls) -> BufferConfig:
        """Load configuration from environment variables."""
        return cls(
            log_capacity=int(os.getenv("LOG_BUFFER_CAPACITY", "100")),
            initial_fetch_limit=int(os.getenv("INITIAL_FETCH_LIMIT", "100")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        feed_backend: Which change feed backend to use
        kafka: Kafka configuration (if feed_backend is KAFKA)
        rest: REST data API configuration
        upload: Upload API configuration
        buffers: View sizing
        observability: Logging configuration
    """

    feed_backend: FeedBackend = FeedBackend.KAFKA
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    rest: RestConfig = field(default_factory=RestConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    buffers: BufferConfig = field(default_factory=BufferConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("CHANGE_FEED_BACKEND", "kafka").lower()
        try:
            feed_backend = FeedBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid CHANGE_FEED_BACKEND '{backend_str}'. Must be one of: kafka, memory"
            )

        config = cls(
            feed_backend=feed_backend,
            kafka=KafkaConfig.from_env(),
            rest=RestConfig.from_env(),
            upload=UploadConfig.from_env(),
            buffers=BufferConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.feed_backend == FeedBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when CHANGE_FEED_BACKEND=kafka")

        if not self.rest.base_url:
            raise ValueError("REST_URL is required")

        if self.buffers.log_capacity < 1:
            raise ValueError("LOG_BUFFER_CAPACITY must be at least 1")
        if self.buffers.initial_fetch_limit < 1:
            raise ValueError("INITIAL_FETCH_LIMIT must be at least 1")

        if self.buffers.initial_fetch_limit > self.buffers.log_capacity:
            logger.warning(
                "INITIAL_FETCH_LIMIT exceeds LOG_BUFFER_CAPACITY; "
                "log views will truncate their initial batch",
                extra={
                    "initial_fetch_limit": self.buffers.initial_fetch_limit,
                    "log_capacity": self.buffers.log_capacity,
                },
            )

        if self.rest.api_key is None:
            logger.warning("REST_API_KEY is not set; requests will be anonymous")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "feed_backend": self.feed_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.feed_backend == FeedBackend.KAFKA
                else None,
                "kafka_topic_prefix": self.kafka.topic_prefix
                if self.feed_backend == FeedBackend.KAFKA
                else None,
                "rest_url": self.rest.base_url,
                "rest_api_key_set": self.rest.api_key is not None,
                "upload_url": self.upload.api_url,
                "log_capacity": self.buffers.log_capacity,
                "log_level": self.observability.log_level,
            },
        )
