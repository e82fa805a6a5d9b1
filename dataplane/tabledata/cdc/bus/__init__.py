"""
Event bus abstraction for tabledata change events.

Supported backends:
- EventBridge (AWS)
- Kafka / Redpanda
- In-memory (tests and local development)
"""

from .base import (
    BusConnectionError,
    BusError,
    BusEvent,
    BusTimeoutError,
    EventBus,
    PublishError,
    create_event_bus,
)
from .eventbridge import EventBridgeBus
from .kafka import KafkaEventBus
from .memory import InMemoryEventBus

__all__ = [
    "BusConnectionError",
    "BusError",
    "BusEvent",
    "BusTimeoutError",
    "EventBridgeBus",
    "EventBus",
    "InMemoryEventBus",
    "KafkaEventBus",
    "PublishError",
    "create_event_bus",
]
