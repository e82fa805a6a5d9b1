"""
tabledata - entry points and process wiring.

Builds the store and the CDC dispatcher from environment configuration and
exposes ``handler``, the stream-trigger entry point:

    handler(event, context) -> {"batchItemFailures": [...]}

The first call loads ServiceConfig, configures logging and builds the
dispatcher; later calls in the same process reuse them together with the
process's event loop, ProcessContext and bus connection.

Invariants:
    - One ProcessContext per process, so faas.coldstart is reported once
    - Configuration errors surface on the first invocation, not at import

How to change safely:
    - Keep handler synchronous; the function runtime calls it directly
    - Anything connected here is bound to the handler's event loop
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional

import json_log_formatter

from .cdc.bus import create_event_bus
from .cdc.dispatcher import TableDispatcher
from .config import ServiceConfig
from .schema.registry import EntityRegistry
from .store.dynamodb import DynamoDBTable
from .store.entity_store import EntityStore
from .telemetry import OpenTelemetryTelemetry, ProcessContext, Telemetry

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def build_store(config: ServiceConfig, registry: EntityRegistry) -> EntityStore:
    """Entity store over the configured DynamoDB table.

    The registry is frozen; register every entity type before calling this.
    """
    if not registry.frozen:
        registry.freeze()
    return EntityStore(
        DynamoDBTable(config.table),
        registry,
        consistent_reads=config.table.consistent_reads,
    )


def build_dispatcher(
    config: ServiceConfig,
    telemetry: Optional[Telemetry] = None,
    process_context: Optional[ProcessContext] = None,
) -> TableDispatcher:
    """Dispatcher publishing to the configured bus.

    The bus connects on the first dispatch.
    """
    return TableDispatcher(
        table_name=config.table.table_name,
        bus=create_event_bus(config),
        telemetry=telemetry or OpenTelemetryTelemetry(),
        max_concurrency=config.dispatcher.max_concurrency,
        process_context=process_context,
    )


class StreamHandler:
    """Synchronous stream-trigger entry point backed by a TableDispatcher.

    Example:
        >>> handler = StreamHandler()
        >>> handler({"Records": [...]}, context)
        {'batchItemFailures': []}
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        telemetry: Optional[Telemetry] = None,
    ) -> None:
        self._config = config
        self._telemetry = telemetry
        self._process_context = ProcessContext()
        self._dispatcher: Optional[TableDispatcher] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    @property
    def dispatcher(self) -> TableDispatcher:
        with self._lock:
            if self._dispatcher is None:
                if self._config is None:
                    self._config = ServiceConfig.from_env()
                    setup_logging(self._config)
                self._config.log_config()
                self._dispatcher = build_dispatcher(
                    self._config, self._telemetry, self._process_context
                )
            return self._dispatcher

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.new_event_loop()
        return self._loop

    def __call__(self, event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        dispatcher = self.dispatcher
        return self._event_loop().run_until_complete(dispatcher.handle(event, context))

    def shutdown(self) -> None:
        """Close the bus connection and the event loop."""
        if self._loop is None or self._loop.is_closed():
            return
        if self._dispatcher is not None:
            self._loop.run_until_complete(self._dispatcher.bus.close())
        self._loop.close()
        logger.info("Stream handler shut down")


handler = StreamHandler()
