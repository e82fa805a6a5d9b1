"""
In-memory event bus implementation for testing.

This module provides a simple in-memory bus backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Events are kept in publish order
    - A failure rule rejects matching events without recording them

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with EventBus protocol
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .base import BusConnectionError, BusEvent, PublishError

logger = logging.getLogger(__name__)

EventPredicate = Callable[[BusEvent], bool]


class InMemoryEventBus:
    """In-memory implementation of EventBus for testing.

    Example:
        >>> bus = InMemoryEventBus()
        >>> await bus.connect()
        >>> bus.fail_when(lambda e: e.detail["keys"]["pk"] == "USER#3")
        >>> await bus.publish(event)
        >>> bus.events
    """

    def __init__(self) -> None:
        self._events: List[BusEvent] = []
        self._rules: List[Tuple[EventPredicate, Optional[Exception]]] = []
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def events(self) -> List[BusEvent]:
        """Published events, in publish order."""
        return list(self._events)

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventBus connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryEventBus closed")

    async def publish(self, event: BusEvent) -> Optional[str]:
        """Record an event, or raise if a failure rule matches it.

        Raises:
            BusConnectionError: If not connected
            PublishError: If a failure rule without an explicit error matches
        """
        if not self._connected:
            raise BusConnectionError("Not connected")

        for predicate, error in self._rules:
            if predicate(event):
                if error is not None:
                    raise error
                raise PublishError(f"Simulated rejection of event from {event.source}")

        async with self._lock:
            self._events.append(event)
            return str(len(self._events))

    # Testing helpers

    def fail_when(self, predicate: EventPredicate, error: Optional[Exception] = None) -> None:
        """Reject every event matching ``predicate``.

        Args:
            predicate: Called with each published event
            error: Exception to raise (PublishError when omitted)
        """
        self._rules.append((predicate, error))

    def clear(self) -> None:
        """Drop recorded events and failure rules."""
        self._events.clear()
        self._rules.clear()

    def events_for(self, source: str) -> List[BusEvent]:
        return [e for e in self._events if e.source == source]
