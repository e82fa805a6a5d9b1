"""
Configuration management for tabledata.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set TABLE_NAME and the bus target
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep retry defaults at 5 attempts / 2000 ms; consumers size their
      invocation timeouts around them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class BusBackend(Enum):
    """Supported event bus backends."""

    EVENTBRIDGE = "eventbridge"
    KAFKA = "kafka"


@dataclass(frozen=True)
class TableConfig:
    """DynamoDB table configuration.

    Attributes:
        table_name: Name of the shared table
        region: AWS region
        endpoint_url: Custom endpoint URL (DynamoDB Local / LocalStack)
        consistent_reads: Default read consistency for every entity type
        request_timeout_s: Per-request timeout
    """

    table_name: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    consistent_reads: bool = False
    request_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> TableConfig:
        """Load configuration from environment variables."""
        return cls(
            table_name=os.getenv("TABLE_NAME", ""),
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT_URL"),
            consistent_reads=_env_bool("CONSISTENT_READS"),
            request_timeout_s=float(os.getenv("DYNAMODB_REQUEST_TIMEOUT_S", "30")),
        )


@dataclass(frozen=True)
class EventBridgeConfig:
    """EventBridge bus configuration.

    Attributes:
        bus_name: Event bus name or ARN
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack testing)
    """

    bus_name: str = "default"
    region: str = "us-east-1"
    endpoint_url: str | None = None

    @classmethod
    def from_env(cls) -> EventBridgeConfig:
        """Load configuration from environment variables."""
        return cls(
            bus_name=os.getenv("EVENT_BUS_NAME", "default"),
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("EVENTBRIDGE_ENDPOINT_URL"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda bus configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic change events are published to
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        request_timeout_ms: Producer request timeout
    """

    brokers: str = "localhost:9092"
    topic: str = "tabledata-changes"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    acks: str = "all"
    enable_idempotence: bool = True
    request_timeout_ms: int = 30000

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "tabledata-changes"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            request_timeout_ms=int(os.getenv("KAFKA_REQUEST_TIMEOUT_MS", "30000")),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Retry wrapper configuration.

    Attributes:
        max_attempts: Attempts before the last contention error propagates
        base_delay_ms: Wait before attempt i+1 is (i + 1) * base_delay_ms
    """

    max_attempts: int = 5
    base_delay_ms: int = 2000

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "5")),
            base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", "2000")),
        )


@dataclass(frozen=True)
class DispatcherConfig:
    """CDC dispatcher configuration.

    Attributes:
        max_concurrency: Upper bound on records processed at once
            (None processes the whole batch concurrently)
    """

    max_concurrency: int | None = None

    @classmethod
    def from_env(cls) -> DispatcherConfig:
        """Load configuration from environment variables."""
        value = os.getenv("DISPATCHER_MAX_CONCURRENCY")
        return cls(max_concurrency=int(value) if value else None)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        service_name: Name reported on traces and log lines
    """

    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "tabledata"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            service_name=os.getenv("OTEL_SERVICE_NAME", "tabledata"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        bus_backend: Which event bus backend to use
        table: Table configuration
        eventbridge: EventBridge configuration (if bus_backend is EVENTBRIDGE)
        kafka: Kafka configuration (if bus_backend is KAFKA)
        retry: Retry wrapper configuration
        dispatcher: CDC dispatcher configuration
        observability: Observability configuration
    """

    bus_backend: BusBackend = BusBackend.EVENTBRIDGE
    table: TableConfig = field(default_factory=TableConfig)
    eventbridge: EventBridgeConfig = field(default_factory=EventBridgeConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("BUS_BACKEND", "eventbridge").lower()
        try:
            bus_backend = BusBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid BUS_BACKEND '{backend_str}'. Must be one of: eventbridge, kafka"
            )

        config = cls(
            bus_backend=bus_backend,
            table=TableConfig.from_env(),
            eventbridge=EventBridgeConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            retry=RetryConfig.from_env(),
            dispatcher=DispatcherConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.table.table_name:
            raise ValueError("TABLE_NAME is required")

        if self.bus_backend == BusBackend.EVENTBRIDGE:
            if not self.eventbridge.bus_name:
                raise ValueError("EVENT_BUS_NAME is required when BUS_BACKEND=eventbridge")
        elif self.bus_backend == BusBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when BUS_BACKEND=kafka")
            if not self.kafka.topic:
                raise ValueError("KAFKA_TOPIC is required when BUS_BACKEND=kafka")

        if self.retry.max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry.base_delay_ms < 0:
            raise ValueError("RETRY_BASE_DELAY_MS must not be negative")
        if self.dispatcher.max_concurrency is not None and self.dispatcher.max_concurrency < 1:
            raise ValueError("DISPATCHER_MAX_CONCURRENCY must be at least 1")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "bus_backend": self.bus_backend.value,
                "table_name": self.table.table_name,
                "dynamodb_endpoint": self.table.endpoint_url or "AWS",
                "event_bus": self.eventbridge.bus_name
                if self.bus_backend == BusBackend.EVENTBRIDGE
                else None,
                "kafka_brokers": self.kafka.brokers
                if self.bus_backend == BusBackend.KAFKA
                else None,
                "kafka_topic": self.kafka.topic if self.bus_backend == BusBackend.KAFKA else None,
                "retry_max_attempts": self.retry.max_attempts,
                "log_level": self.observability.log_level,
            },
        )
