"""
Unit tests for environment configuration.
"""

import pytest

from dataplane.tabledata.config import (
    BusBackend,
    DispatcherConfig,
    KafkaConfig,
    RetryConfig,
    ServiceConfig,
    TableConfig,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "TABLE_NAME",
        "BUS_BACKEND",
        "EVENT_BUS_NAME",
        "KAFKA_BROKERS",
        "KAFKA_TOPIC",
        "CONSISTENT_READS",
        "RETRY_MAX_ATTEMPTS",
        "RETRY_BASE_DELAY_MS",
        "DISPATCHER_MAX_CONCURRENCY",
        "DYNAMODB_ENDPOINT_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestServiceConfig:
    """Tests for ServiceConfig loading and validation."""

    def test_defaults(self, clean_env):
        clean_env.setenv("TABLE_NAME", "Entities")

        config = ServiceConfig.from_env()

        assert config.bus_backend == BusBackend.EVENTBRIDGE
        assert config.table.table_name == "Entities"
        assert config.table.consistent_reads is False
        assert config.retry == RetryConfig(max_attempts=5, base_delay_ms=2000)
        assert config.dispatcher.max_concurrency is None

    def test_table_name_required(self, clean_env):
        with pytest.raises(ValueError, match="TABLE_NAME"):
            ServiceConfig.from_env()

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("TABLE_NAME", "Entities")
        clean_env.setenv("BUS_BACKEND", "sqs")

        with pytest.raises(ValueError, match="Invalid BUS_BACKEND"):
            ServiceConfig.from_env()

    def test_kafka_backend(self, clean_env):
        clean_env.setenv("TABLE_NAME", "Entities")
        clean_env.setenv("BUS_BACKEND", "KAFKA")
        clean_env.setenv("KAFKA_BROKERS", "broker-1:9092,broker-2:9092")
        clean_env.setenv("KAFKA_TOPIC", "changes")

        config = ServiceConfig.from_env()

        assert config.bus_backend == BusBackend.KAFKA
        assert config.kafka.brokers == "broker-1:9092,broker-2:9092"
        assert config.kafka.topic == "changes"

    def test_env_overrides(self, clean_env):
        clean_env.setenv("TABLE_NAME", "Entities")
        clean_env.setenv("CONSISTENT_READS", "true")
        clean_env.setenv("RETRY_MAX_ATTEMPTS", "3")
        clean_env.setenv("DISPATCHER_MAX_CONCURRENCY", "8")
        clean_env.setenv("DYNAMODB_ENDPOINT_URL", "http://localhost:8000")

        config = ServiceConfig.from_env()

        assert config.table.consistent_reads is True
        assert config.table.endpoint_url == "http://localhost:8000"
        assert config.retry.max_attempts == 3
        assert config.dispatcher.max_concurrency == 8

    @pytest.mark.parametrize(
        "config",
        [
            ServiceConfig(table=TableConfig(table_name="T"), retry=RetryConfig(max_attempts=0)),
            ServiceConfig(table=TableConfig(table_name="T"), retry=RetryConfig(base_delay_ms=-1)),
            ServiceConfig(
                table=TableConfig(table_name="T"),
                dispatcher=DispatcherConfig(max_concurrency=0),
            ),
            ServiceConfig(
                bus_backend=BusBackend.KAFKA,
                table=TableConfig(table_name="T"),
                kafka=KafkaConfig(topic=""),
            ),
        ],
    )
    def test_validate_rejects(self, config):
        with pytest.raises(ValueError):
            config.validate()
