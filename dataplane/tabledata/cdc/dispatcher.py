"""
CDC dispatcher: republish table change records onto the event bus.

For each raw stream record in a batch, independently:

    normalize -> type tag -> BusEvent -> bus.publish

Every record runs in its own task and turns into a RecordOutcome; a task
never raises, so one failure cannot cancel its siblings. Failed records
are reported by sequence number for partial batch redelivery:

    {"batchItemFailures": [{"itemIdentifier": "<sequence number>"}, ...]}

A failed record that has no sequence number cannot be redelivered, which
means the stream trigger was set up without partial batch responses. That
is captured as a MissingSequenceNumberError and escalated by handle()
once every record has finished.

Invariants:
    - Every failure is passed to telemetry.capture_exception while its
      record span is current
    - failed_identifiers holds exactly the sequence numbers of failed records
    - Records are published concurrently; ordering within a batch is not kept

How to change safely:
    - Keep the event shape (source, detail_type, detail) stable; consumers
      route on it
    - Do not add retries here; redelivery is the stream's job
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import ConfigurationError, DataIntegrityError, MissingSequenceNumberError
from ..telemetry import Attributes, ProcessContext, Telemetry
from .bus import BusEvent, EventBus
from .records import ChangeRecord, normalize_record

logger = logging.getLogger(__name__)

SPAN_NAME = "aws:dynamodb process record"


@dataclass
class RecordOutcome:
    """What happened to one record of a batch.

    Attributes:
        sequence_number: Sequence number of the record, if it had one
        published: Whether the event reached the bus
        error: The failure, when not published
        fatal: Configuration error raised by the failure, if any
        event_id: Id the bus assigned to the event
    """

    sequence_number: Optional[str]
    published: bool
    error: Optional[BaseException] = None
    fatal: Optional[ConfigurationError] = None
    event_id: Optional[str] = None


@dataclass
class DispatchResult:
    """Aggregated outcome of one batch.

    Attributes:
        failed_identifiers: Sequence numbers of records to redeliver
        fatal_errors: Configuration errors found while processing
        processed: Number of records in the batch
    """

    failed_identifiers: List[str] = field(default_factory=list)
    fatal_errors: List[ConfigurationError] = field(default_factory=list)
    processed: int = 0

    @property
    def all_succeeded(self) -> bool:
        return not self.failed_identifiers and not self.fatal_errors

    def to_response(self) -> Dict[str, List[Dict[str, str]]]:
        """Partial batch response; an empty list means nothing failed."""
        return {
            "batchItemFailures": [
                {"itemIdentifier": identifier} for identifier in self.failed_identifiers
            ]
        }

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[RecordOutcome]) -> DispatchResult:
        result = cls(processed=len(outcomes))
        for outcome in outcomes:
            if outcome.published:
                continue
            if outcome.sequence_number:
                result.failed_identifiers.append(outcome.sequence_number)
            if outcome.fatal is not None:
                result.fatal_errors.append(outcome.fatal)
        return result


def _stream_section(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Mapping) and isinstance(raw.get("dynamodb"), Mapping):
        return raw["dynamodb"]
    return {}


def _sequence_number(raw: Any) -> Optional[str]:
    return _stream_section(raw).get("SequenceNumber") or None


def record_span_attributes(raw: Any) -> Attributes:
    """Span attributes describing one raw record; tolerant of bad input."""
    if not isinstance(raw, Mapping):
        return {"faas.trigger": "datasource"}
    stream = _stream_section(raw)
    source_arn = raw.get("eventSourceARN")
    collection = None
    if isinstance(source_arn, str) and "/" in source_arn:
        collection = source_arn.split("/")[1]
    event_name = raw.get("eventName")
    return {
        "faas.document.collection": collection,
        "faas.document.name": json.dumps(stream.get("Keys"), sort_keys=True, default=str),
        "faas.document.operation": event_name.lower() if isinstance(event_name, str) else None,
        "faas.document.time": stream.get("ApproximateCreationDateTime"),
        "faas.trigger": "datasource",
    }


class TableDispatcher:
    """Publishes every change record of one table onto an event bus.

    Attributes:
        table_name: Logical table name, the first part of each event source
        bus: EventBus receiving the events
        telemetry: Telemetry receiving spans and captured exceptions

    Example:
        >>> dispatcher = TableDispatcher("Table", InMemoryEventBus(), RecordingTelemetry())
        >>> result = await dispatcher.dispatch(event["Records"])
        >>> result.to_response()
        {'batchItemFailures': []}
    """

    def __init__(
        self,
        table_name: str,
        bus: EventBus,
        telemetry: Telemetry,
        max_concurrency: Optional[int] = None,
        process_context: Optional[ProcessContext] = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            table_name: Logical table name
            bus: Event bus; connected on first dispatch if needed
            telemetry: Telemetry backend
            max_concurrency: Upper bound on records in flight (None for all)
            process_context: Per-process state for invocation attributes
        """
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.table_name = table_name
        self.bus = bus
        self.telemetry = telemetry
        self.max_concurrency = max_concurrency
        self.process_context = process_context or ProcessContext()

    def build_event(self, record: ChangeRecord) -> BusEvent:
        """Turn a normalized record into the event published for it.

        Raises:
            DataIntegrityError: If neither image carries a type tag
        """
        type_tag = record.type_tag
        if not type_tag:
            raise DataIntegrityError(
                "Change record has no type tag in its images",
                details={"event_id": record.event_id, "keys": record.to_dict()["keys"]},
            )
        return BusEvent(
            source=f"{self.table_name}.{type_tag}",
            detail_type=record.kind.value,
            detail=record.to_dict(),
            resources=[record.table_arn] if record.table_arn else [],
            time=record.event_time,
        )

    async def _process(self, raw: Any) -> RecordOutcome:
        return await self.telemetry.capture_async_function(
            SPAN_NAME, record_span_attributes(raw), lambda: self._process_in_span(raw)
        )

    async def _process_in_span(self, raw: Any) -> RecordOutcome:
        # Failures are captured here, on the record span, and never re-raised.
        sequence_number = _sequence_number(raw)
        try:
            record = normalize_record(raw)
            event_id = await self.bus.publish(self.build_event(record))
        except Exception as e:
            self.telemetry.capture_exception(e)
            event_id_of_record = raw.get("eventID") if isinstance(raw, Mapping) else None
            logger.warning(
                "Failed to dispatch change record",
                extra={
                    "table_name": self.table_name,
                    "event_id": event_id_of_record,
                    "sequence_number": sequence_number,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            if not sequence_number:
                fatal = MissingSequenceNumberError(event_id_of_record)
                self.telemetry.capture_exception(fatal)
                logger.error(str(fatal), extra={"table_name": self.table_name})
                return RecordOutcome(None, published=False, error=e, fatal=fatal)
            return RecordOutcome(sequence_number, published=False, error=e)

        return RecordOutcome(sequence_number, published=True, event_id=event_id)

    async def dispatch(self, raw_records: Sequence[Any]) -> DispatchResult:
        """Publish a batch of raw stream records.

        Returns:
            DispatchResult aggregating every record's outcome

        Raises:
            BusConnectionError: If the bus cannot be connected
        """
        if not self.bus.is_connected:
            await self.bus.connect()

        if self.max_concurrency is None:
            outcomes = await asyncio.gather(*(self._process(raw) for raw in raw_records))
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def bounded(raw: Any) -> RecordOutcome:
                async with semaphore:
                    return await self._process(raw)

            outcomes = await asyncio.gather(*(bounded(raw) for raw in raw_records))

        result = DispatchResult.from_outcomes(outcomes)
        logger.info(
            "Dispatched change records",
            extra={
                "table_name": self.table_name,
                "processed": result.processed,
                "failed": len(result.failed_identifiers),
                "fatal": len(result.fatal_errors),
            },
        )
        return result

    async def handle(self, event: Mapping[str, Any], context: Any = None) -> Dict[str, Any]:
        """Stream-trigger entry point.

        Returns:
            The partial batch response

        Raises:
            MissingSequenceNumberError: The first fatal configuration error,
                after every record finished
        """

        async def run() -> Dict[str, Any]:
            result = await self.dispatch(event.get("Records") or [])
            if result.fatal_errors:
                raise result.fatal_errors[0]
            return result.to_response()

        return await self.telemetry.capture_async_function(
            SPAN_NAME, self.process_context.invocation_attributes(context), run
        )

