"""
Key derivation and node id encoding.

Keys are pure functions of domain attributes. A key string is the
template prefix followed by the rendered attribute values, joined with
``#``:

    UserLogin(vendor="GITHUB", externalId="8943", login="alice")
        pk = "USER#GITHUB#8943"
        sk = "LOGIN#alice"

A node id is the URL-safe base64 (unpadded) encoding of
``TypeName:pk`` for simple keys and ``TypeName:pk#:#sk`` for composite
keys. It is the global, opaque identifier exposed as ``Item.id``. Inside
the key parts ``%`` and ``:`` are percent-escaped, so the only ``:`` left
after the type name is the one in ``#:#``.

Invariants:
    - derive_primary_key never touches the store
    - Equal attributes always render to equal key strings
    - decode_node_id(encode_node_id(t, k)) == (t, k) for every key, including
      values that contain the separators

How to change safely:
    - Changing render_value changes every key in the table; existing items
      become unreachable
    - Ids of keys without ``%`` or ``:`` must stay byte-identical; existing
      ids are stored by callers
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import DecodingError, MissingKeyAttributeError, UnknownIndexError
from ..schema.types import TIMESTAMP_FIELDS, EntityType, KeyTemplate

KEY_SEPARATOR = "#"
NODE_ID_TYPE_SEPARATOR = ":"
NODE_ID_SORT_SEPARATOR = "#:#"
NODE_ID_ESCAPE = "%"


@dataclass(frozen=True)
class PrimaryKey:
    """Rendered primary key of an item.

    Attributes:
        partition: Value of the ``pk`` column
        sort: Value of the ``sk`` column (composite keys only)
    """

    partition: str
    sort: Optional[str] = None

    def as_key(self) -> Dict[str, str]:
        """Storage key map, as passed to get/update/delete."""
        key = {"pk": self.partition}
        if self.sort is not None:
            key["sk"] = self.sort
        return key

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> PrimaryKey:
        return cls(partition=raw["pk"], sort=raw.get("sk"))

    def __str__(self) -> str:
        if self.sort is None:
            return self.partition
        return f"{self.partition}{NODE_ID_SORT_SEPARATOR}{self.sort}"


def to_epoch_ms(value: Any) -> int:
    """Normalize a date value (datetime or Unix ms number) to Unix ms."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(value)


def render_value(value: Any) -> str:
    """Render one attribute value as a key segment."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return str(to_epoch_ms(value))
    if isinstance(value, Enum):
        return render_value(value.value)
    return str(value)


def _lookup(
    attributes: Mapping[str, Any],
    name: str,
    now_ms: Optional[int],
) -> Any:
    value = attributes.get(name)
    if value is None and name in TIMESTAMP_FIELDS:
        return now_ms
    return value


def render_key(
    entity_type: EntityType,
    template: KeyTemplate,
    attributes: Mapping[str, Any],
    *,
    now_ms: Optional[int] = None,
    key_name: str = "primary key",
) -> str:
    """Render a full key from a template.

    ``createdAt``/``updatedAt`` fall back to ``now_ms`` when absent from
    ``attributes``.

    Raises:
        MissingKeyAttributeError: If any template field is absent or None
    """
    segments = [template.prefix] if template.prefix else []
    for name in template.fields:
        value = _lookup(attributes, name, now_ms)
        if value is None:
            raise MissingKeyAttributeError(entity_type.name, name, key_name)
        segments.append(render_value(value))
    return KEY_SEPARATOR.join(segments)


def sort_key_prefix(template: KeyTemplate, attributes: Mapping[str, Any]) -> str:
    """Render the longest sort key prefix the attributes allow.

    The prefix is followed by each template field, in order, until the
    first one missing from ``attributes``. Used for ``begins_with``
    queries.

    Example:
        >>> sort_key_prefix(KeyTemplate("LOGIN", ("login",)), {})
        'LOGIN'
        >>> sort_key_prefix(KeyTemplate("LOGIN", ("login",)), {"login": "alice"})
        'LOGIN#alice'
    """
    segments = [template.prefix] if template.prefix else []
    for name in template.fields:
        value = attributes.get(name)
        if value is None:
            break
        segments.append(render_value(value))
    return KEY_SEPARATOR.join(segments)


def derive_primary_key(entity_type: EntityType, attributes: Mapping[str, Any]) -> PrimaryKey:
    """Derive the primary key of an item from its domain attributes.

    Args:
        entity_type: The item's entity type
        attributes: Domain attributes (extra attributes are ignored)

    Returns:
        PrimaryKey with partition and, for composite types, sort

    Raises:
        MissingKeyAttributeError: If a key attribute is absent or None
    """
    partition = render_key(entity_type, entity_type.partition_key, attributes)
    sort = None
    if entity_type.sort_key is not None:
        sort = render_key(entity_type, entity_type.sort_key, attributes)
    return PrimaryKey(partition=partition, sort=sort)


def derive_index_key(
    entity_type: EntityType,
    index_name: str,
    attributes: Mapping[str, Any],
    now_ms: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Derive the (partition, sort) key pair of a secondary index.

    LSIs share the table partition, so the returned partition is the
    item's ``pk``.

    Raises:
        UnknownIndexError: If the entity type has no such index
        MissingKeyAttributeError: If an index key attribute is missing
    """
    index = entity_type.get_index(index_name)
    if index is None:
        raise UnknownIndexError(entity_type.name, index_name)

    key_name = f"index {index_name}"
    if index.partition is not None:
        partition = render_key(
            entity_type, index.partition, attributes, now_ms=now_ms, key_name=key_name
        )
    else:
        partition = render_key(entity_type, entity_type.partition_key, attributes)

    sort = None
    if index.sort is not None:
        sort = render_key(entity_type, index.sort, attributes, now_ms=now_ms, key_name=key_name)
    return partition, sort


def _escape(value: str) -> str:
    return value.replace(NODE_ID_ESCAPE, "%25").replace(NODE_ID_TYPE_SEPARATOR, "%3A")


def _unescape(value: str) -> str:
    return value.replace("%3A", NODE_ID_TYPE_SEPARATOR).replace("%25", NODE_ID_ESCAPE)


def encode_node_id(type_name: str, key: PrimaryKey) -> str:
    """Encode a type name and primary key as an opaque node id."""
    raw = f"{type_name}{NODE_ID_TYPE_SEPARATOR}{_escape(key.partition)}"
    if key.sort is not None:
        raw += f"{NODE_ID_SORT_SEPARATOR}{_escape(key.sort)}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_node_id(node_id: str) -> Tuple[str, PrimaryKey]:
    """Decode a node id into its type name and primary key.

    Raises:
        DecodingError: If the id is not valid base64, not UTF-8, does not
            contain a type name, or has a misplaced separator
    """
    if not isinstance(node_id, str) or not node_id:
        raise DecodingError("Node id must be a non-empty string", details={"node_id": node_id})

    padded = node_id + "=" * (-len(node_id) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise DecodingError(
            f"Node id is not valid base64url: {e}", details={"node_id": node_id}
        ) from e

    type_name, sep, key = raw.partition(NODE_ID_TYPE_SEPARATOR)
    if not sep or not type_name:
        raise DecodingError(
            "Node id does not name an entity type", details={"node_id": node_id}
        )
    if not key:
        raise DecodingError("Node id has an empty key", details={"node_id": node_id})

    # Escaped key parts never contain ":", so at most one remains.
    head, sep, tail = key.partition(NODE_ID_TYPE_SEPARATOR)
    if not sep:
        return type_name, PrimaryKey(partition=_unescape(key))
    if (
        NODE_ID_TYPE_SEPARATOR in tail
        or not head.endswith(KEY_SEPARATOR)
        or not tail.startswith(KEY_SEPARATOR)
    ):
        raise DecodingError("Node id has a misplaced separator", details={"node_id": node_id})
    return type_name, PrimaryKey(partition=_unescape(head[:-1]), sort=_unescape(tail[1:]))
