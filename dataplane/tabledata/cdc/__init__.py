"""
Change data capture pipeline.

    table stream -> TableDispatcher -> EventBus -> Enricher / ModelChangeHandler
"""

from .bus import (
    BusConnectionError,
    BusError,
    BusEvent,
    BusTimeoutError,
    EventBridgeBus,
    EventBus,
    InMemoryEventBus,
    KafkaEventBus,
    PublishError,
    create_event_bus,
)
from .change_handler import ModelChangeHandler
from .dispatcher import DispatchResult, RecordOutcome, TableDispatcher
from .enricher import Enricher
from .records import ChangeKind, ChangeRecord, normalize_record
from .retry import RetryPolicy, retry

__all__ = [
    "BusConnectionError",
    "BusError",
    "BusEvent",
    "BusTimeoutError",
    "ChangeKind",
    "ChangeRecord",
    "DispatchResult",
    "Enricher",
    "EventBridgeBus",
    "EventBus",
    "InMemoryEventBus",
    "KafkaEventBus",
    "ModelChangeHandler",
    "PublishError",
    "RecordOutcome",
    "RetryPolicy",
    "TableDispatcher",
    "create_event_bus",
    "normalize_record",
    "retry",
]
