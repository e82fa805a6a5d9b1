"""
Base protocol and types for the event bus.

The CDC dispatcher republishes every change record as one BusEvent.
Consumers route on ``source`` (``{table}.{typeTag}``) and ``detail_type``
(the mutation kind).

Invariants:
    - publish() returns only after the bus accepted the event
    - A rejected event raises; there is no partial success for one event
    - BusEvent.detail is JSON-serializable

How to change safely:
    - Protocol changes require updating every backend
    - Keep the event shape stable; subscribers match on source and
      detail_type
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ...config import ServiceConfig

logger = logging.getLogger(__name__)


class BusError(Exception):
    """Base exception for event bus operations."""
    pass


class BusConnectionError(BusError):
    """Connection to the bus backend failed."""
    pass


class BusTimeoutError(BusError):
    """Publishing timed out or was throttled."""
    pass


class PublishError(BusError):
    """The bus rejected an event."""

    def __init__(self, message: str, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code


@dataclass
class BusEvent:
    """One event on the bus.

    Attributes:
        source: ``{table}.{typeTag}``
        detail_type: Mutation kind (INSERT, MODIFY, REMOVE)
        detail: The normalized change record
        resources: Originating table ARN(s)
        time: Approximate mutation time
    """

    source: str
    detail_type: str
    detail: Dict[str, Any]
    resources: List[str] = field(default_factory=list)
    time: Optional[datetime] = None

    def detail_json(self) -> str:
        return json.dumps(self.detail, sort_keys=True, default=str)

    def to_entry(self, bus_name: str) -> Dict[str, Any]:
        """Render as an EventBridge PutEvents entry."""
        entry: Dict[str, Any] = {
            "EventBusName": bus_name,
            "Source": self.source,
            "DetailType": self.detail_type,
            "Detail": self.detail_json(),
            "Resources": list(self.resources),
        }
        if self.time is not None:
            entry["Time"] = self.time
        return entry

    def to_dict(self) -> Dict[str, Any]:
        """Envelope shape handed to consumers (``event["detail"]`` etc.)."""
        return {
            "source": self.source,
            "detail-type": self.detail_type,
            "detail": self.detail,
            "resources": list(self.resources),
            "time": self.time.isoformat() if self.time else None,
        }


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus backends.

    Example:
        >>> bus = EventBridgeBus(EventBridgeConfig(bus_name="default"))
        >>> await bus.connect()
        >>> await bus.publish(event)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the bus backend.

        Raises:
            BusConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending events and release resources."""
        ...

    @abstractmethod
    async def publish(self, event: BusEvent) -> Optional[str]:
        """Publish one event.

        Returns:
            Backend event id, if the backend assigns one

        Raises:
            PublishError: If the bus rejected the event
            BusConnectionError: If not connected
            BusTimeoutError: If publishing timed out
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_event_bus(config: "ServiceConfig") -> EventBus:
    """Factory function to create an event bus from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ...config import BusBackend
    from .eventbridge import EventBridgeBus
    from .kafka import KafkaEventBus

    if config.bus_backend == BusBackend.EVENTBRIDGE:
        return EventBridgeBus(config.eventbridge)
    elif config.bus_backend == BusBackend.KAFKA:
        return KafkaEventBus(config.kafka)
    else:
        raise ValueError(f"Unsupported bus backend: {config.bus_backend}")
