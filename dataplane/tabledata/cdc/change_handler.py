"""
Generic consumer of change events published by the dispatcher.

Rebuilds the ChangeRecord from the event detail and hands it to a callback
inside a span. Use it for side effects that are not a projection onto
another entity (notifications, search indexing, audit trails).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

from ..telemetry import ProcessContext, Telemetry
from .bus import BusEvent
from .enricher import event_envelope, event_span_name
from .records import ChangeRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeCallback = Callable[[ChangeRecord, Any], Awaitable[T]]


class ModelChangeHandler:
    """Runs a callback for every change event it receives."""

    def __init__(
        self,
        telemetry: Telemetry,
        callback: ChangeCallback,
        process_context: Optional[ProcessContext] = None,
    ) -> None:
        self.telemetry = telemetry
        self.callback = callback
        self.process_context = process_context or ProcessContext()

    async def handle(self, event: Union[BusEvent, Mapping[str, Any]], context: Any = None) -> Any:
        """Decode the event and await the callback.

        Raises:
            MalformedChangeRecordError: If the event detail is not a change record
        """
        envelope = event_envelope(event)

        async def run() -> Any:
            record = ChangeRecord.from_dict(envelope.get("detail"))
            logger.debug(
                "Handling change event",
                extra={"event_id": record.event_id, "event_name": record.kind.value},
            )
            return await self.callback(record, context)

        return await self.telemetry.capture_async_function(
            event_span_name(envelope), self.process_context.invocation_attributes(context), run
        )
