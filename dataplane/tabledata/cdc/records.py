"""
Change record normalization.

DynamoDB Streams deliver mutation records with wire-encoded images
(``{"S": "alice"}``). This module turns them into ChangeRecord objects
with plain Python images, and back into a JSON-safe dict that travels as
the bus event detail.

Raw record shape (as delivered to a stream consumer):

    {
        "eventID": "c81e728d9d4c2f636f067f89cc14862c",
        "eventName": "INSERT" | "MODIFY" | "REMOVE",
        "eventSourceARN": "arn:aws:dynamodb:...:table/T/stream/2024-01-01T00:00:00.000",
        "dynamodb": {
            "ApproximateCreationDateTime": 1700000000,
            "Keys": {...}, "NewImage": {...}, "OldImage": {...},
            "SequenceNumber": "111", "StreamViewType": "NEW_AND_OLD_IMAGES",
        },
    }

Invariants:
    - normalize_record is pure; it never touches the store or the bus
    - Malformed input raises MalformedChangeRecordError, which is both a
      DecodingError and a DataIntegrityError
    - ChangeRecord.from_dict(record.to_dict()) preserves every field
      (sets come back as lists, bytes as base64 strings)
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from boto3.dynamodb.types import Binary, TypeDeserializer

from ..codec.items import TYPE_COLUMN
from ..errors import MalformedChangeRecordError

_deserializer = TypeDeserializer()


class ChangeKind(Enum):
    """Kinds of mutation a change record describes."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"

    @classmethod
    def from_str(cls, value: Any) -> ChangeKind:
        for kind in cls:
            if kind.value == value:
                return kind
        raise MalformedChangeRecordError(
            f"Unknown change kind {value!r}", details={"event_name": value}
        )


def json_safe(value: Any) -> Any:
    """Convert decoded DynamoDB values into JSON-serializable values."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Binary):
        return base64.b64encode(bytes(value.value)).decode("ascii")
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((json_safe(v) for v in value), key=lambda v: (str(type(v)), v))
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def table_arn_from_source(source_arn: Optional[str]) -> Optional[str]:
    """Strip the ``/stream/...`` suffix from a stream ARN."""
    if not source_arn:
        return None
    return source_arn.split("/stream")[0]


@dataclass
class ChangeRecord:
    """A normalized mutation record.

    Attributes:
        event_id: Change-log event id
        kind: INSERT, MODIFY or REMOVE
        table_arn: ARN of the mutated table (stream suffix removed)
        source_arn: ARN of the stream the record came from
        keys: Primary key of the mutated item
        new_image: Item after the mutation (absent for REMOVE)
        old_image: Item before the mutation (absent for INSERT)
        sequence_number: Change-log sequence number, the redelivery id
        approximate_time_s: Approximate mutation time, Unix seconds
        stream_view_type: Which images the stream carries
    """

    event_id: Optional[str]
    kind: ChangeKind
    table_arn: Optional[str] = None
    source_arn: Optional[str] = None
    keys: Dict[str, Any] = field(default_factory=dict)
    new_image: Optional[Dict[str, Any]] = None
    old_image: Optional[Dict[str, Any]] = None
    sequence_number: Optional[str] = None
    approximate_time_s: Optional[float] = None
    stream_view_type: Optional[str] = None

    @property
    def type_tag(self) -> Optional[str]:
        """Type tag of the mutated item, from the new image else the old."""
        for image in (self.new_image, self.old_image):
            if image and image.get(TYPE_COLUMN):
                return str(image[TYPE_COLUMN])
        return None

    @property
    def event_time(self) -> Optional[datetime]:
        if self.approximate_time_s is None:
            return None
        return datetime.fromtimestamp(self.approximate_time_s, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation, used as the bus event detail."""
        return {
            "event_id": self.event_id,
            "event_name": self.kind.value,
            "table_arn": self.table_arn,
            "source_arn": self.source_arn,
            "keys": json_safe(self.keys),
            "new_image": json_safe(self.new_image) if self.new_image is not None else None,
            "old_image": json_safe(self.old_image) if self.old_image is not None else None,
            "sequence_number": self.sequence_number,
            "approximate_time_s": json_safe(self.approximate_time_s),
            "stream_view_type": self.stream_view_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChangeRecord:
        """Rebuild a record from to_dict() output.

        Raises:
            MalformedChangeRecordError: If ``data`` is not a record dict
        """
        if not isinstance(data, Mapping):
            raise MalformedChangeRecordError(
                "Change record detail must be an object",
                details={"type": type(data).__name__},
            )
        approx = data.get("approximate_time_s")
        return cls(
            event_id=data.get("event_id"),
            kind=ChangeKind.from_str(data.get("event_name")),
            table_arn=data.get("table_arn"),
            source_arn=data.get("source_arn"),
            keys=dict(data.get("keys") or {}),
            new_image=dict(data["new_image"]) if data.get("new_image") is not None else None,
            old_image=dict(data["old_image"]) if data.get("old_image") is not None else None,
            sequence_number=data.get("sequence_number"),
            approximate_time_s=float(approx) if approx is not None else None,
            stream_view_type=data.get("stream_view_type"),
        )


def _decode_image(raw: Any, name: str, event_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise MalformedChangeRecordError(
            f"{name} must be an attribute map", details={"event_id": event_id}
        )
    try:
        return {k: _deserializer.deserialize(v) for k, v in raw.items()}
    except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as e:
        raise MalformedChangeRecordError(
            f"Could not decode {name}: {e}", details={"event_id": event_id}
        ) from e


def normalize_record(raw: Mapping[str, Any]) -> ChangeRecord:
    """Convert one raw stream record into a ChangeRecord.

    Raises:
        MalformedChangeRecordError: If the record has no ``dynamodb``
            section, an unknown ``eventName``, or undecodable images
    """
    if not isinstance(raw, Mapping):
        raise MalformedChangeRecordError(
            "Change record must be an object", details={"type": type(raw).__name__}
        )
    event_id = raw.get("eventID")
    stream = raw.get("dynamodb")
    if not isinstance(stream, Mapping):
        raise MalformedChangeRecordError(
            "Change record has no dynamodb section", details={"event_id": event_id}
        )

    kind = ChangeKind.from_str(raw.get("eventName"))
    source_arn = raw.get("eventSourceARN")
    approx = stream.get("ApproximateCreationDateTime")
    try:
        approximate_time_s = float(approx) if approx is not None else None
    except (TypeError, ValueError) as e:
        raise MalformedChangeRecordError(
            f"Invalid ApproximateCreationDateTime {approx!r}", details={"event_id": event_id}
        ) from e

    return ChangeRecord(
        event_id=event_id,
        kind=kind,
        table_arn=table_arn_from_source(source_arn),
        source_arn=source_arn,
        keys=_decode_image(stream.get("Keys"), "Keys", event_id) or {},
        new_image=_decode_image(stream.get("NewImage"), "NewImage", event_id),
        old_image=_decode_image(stream.get("OldImage"), "OldImage", event_id),
        sequence_number=stream.get("SequenceNumber"),
        approximate_time_s=approximate_time_s,
        stream_view_type=stream.get("StreamViewType"),
    )
