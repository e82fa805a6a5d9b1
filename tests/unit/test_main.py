"""
Unit tests for process wiring and the stream-trigger entry point.
"""

import logging

import json_log_formatter
import pytest

from dataplane.tabledata.cdc.bus import EventBridgeBus, InMemoryEventBus, KafkaEventBus
from dataplane.tabledata.cdc.dispatcher import TableDispatcher
from dataplane.tabledata.config import (
    BusBackend,
    DispatcherConfig,
    ObservabilityConfig,
    ServiceConfig,
    TableConfig,
)
from dataplane.tabledata.main import StreamHandler, build_dispatcher, build_store, setup_logging
from dataplane.tabledata.schema import EntityRegistry
from dataplane.tabledata.store import DynamoDBTable, EntityStore
from dataplane.tabledata.telemetry import RecordingTelemetry
from tests.entities import ALL_TYPES, login_image, stream_record


def make_config(**overrides):
    return ServiceConfig(table=TableConfig(table_name="Entities"), **overrides)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self, restore_root_logger):
        setup_logging(make_config())

        assert isinstance(restore_root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert restore_root_logger.level == logging.INFO
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, restore_root_logger):
        setup_logging(make_config(observability=ObservabilityConfig(log_level="debug", log_format="text")))

        formatter = restore_root_logger.handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)
        assert restore_root_logger.level == logging.DEBUG


class TestBuilders:
    """Tests for build_store and build_dispatcher."""

    def test_build_store_freezes_registry(self):
        registry = EntityRegistry(ALL_TYPES)

        store = build_store(make_config(), registry)

        assert isinstance(store, EntityStore)
        assert isinstance(store.backend, DynamoDBTable)
        assert registry.frozen

    def test_build_dispatcher_eventbridge(self):
        dispatcher = build_dispatcher(
            make_config(dispatcher=DispatcherConfig(max_concurrency=4)), RecordingTelemetry()
        )

        assert isinstance(dispatcher, TableDispatcher)
        assert isinstance(dispatcher.bus, EventBridgeBus)
        assert dispatcher.table_name == "Entities"
        assert dispatcher.max_concurrency == 4

    def test_build_dispatcher_kafka(self):
        dispatcher = build_dispatcher(make_config(bus_backend=BusBackend.KAFKA))
        assert isinstance(dispatcher.bus, KafkaEventBus)


class TestStreamHandler:
    """Tests for the synchronous entry point."""

    def test_handles_batches_on_one_loop(self):
        telemetry = RecordingTelemetry()
        handler = StreamHandler(config=make_config(), telemetry=telemetry)
        bus = InMemoryEventBus()
        handler._dispatcher = TableDispatcher(
            "Entities", bus, telemetry, process_context=handler._process_context
        )

        first = handler({"Records": [stream_record("1", new_image=login_image("alice"))]})
        second = handler({"Records": [stream_record("2", new_image=login_image("bob"))]})
        handler.shutdown()

        assert first == {"batchItemFailures": []}
        assert second == {"batchItemFailures": []}
        assert [e.source for e in bus.events] == ["Entities.UserLogin", "Entities.UserLogin"]
        outer = [attrs for name, attrs in telemetry.spans if "faas.coldstart" in attrs]
        assert [attrs["faas.coldstart"] for attrs in outer] == [True, False]
        assert not bus.is_connected

    def test_lazily_builds_dispatcher(self):
        handler = StreamHandler(config=make_config(), telemetry=RecordingTelemetry())

        assert handler.dispatcher is handler.dispatcher
        assert isinstance(handler.dispatcher.bus, EventBridgeBus)
