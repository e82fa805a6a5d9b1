"""
Item codec: domain attributes to storage columns and back.

Every stored record carries internal bookkeeping columns next to the
domain columns:

    _et   type tag (the entity type name)
    _ct   createdAt, Unix ms, written once
    _md   updatedAt, Unix ms, refreshed on every write
    _v    version, versioned types only
    ttl   expiry, Unix ms, expiring types only
    pk/sk primary key; {index}pk/{index}sk secondary index keys

Writes are expressed as a WriteDirective (assignments, conditional
assignments, increments and removals against one key) which the store
backends render into their own update primitives.

Invariants:
    - unmarshall checks the type tag before anything else
    - A missing internal column is a DataIntegrityError, never a default
    - createdAt is only ever written by create or if absent
    - Versions start at 1 and grow by exactly 1 per update/touch
    - Computed fields are evaluated before any key is derived, so they can
      feed index keys

How to change safely:
    - Column names are part of the stored format; renaming one orphans
      existing data
    - New FieldKinds need both marshall_value and unmarshall_value
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from ..errors import DataIntegrityError, MissingKeyAttributeError
from ..schema.types import EntityType, FieldDef, FieldKind, IndexKind
from .keys import PrimaryKey, derive_index_key, derive_primary_key, encode_node_id, to_epoch_ms

logger = logging.getLogger(__name__)

TYPE_COLUMN = "_et"
CREATED_COLUMN = "_ct"
UPDATED_COLUMN = "_md"
VERSION_COLUMN = "_v"
TTL_COLUMN = "ttl"


@dataclass
class Item:
    """A decoded entity.

    Attributes:
        type_name: Entity type (type tag)
        id: Node id
        key: Primary key
        created_at: Unix ms, set once
        updated_at: Unix ms, refreshed on every write
        version: Optimistic-locking version (None for unversioned types)
        expires_at: Expiry, Unix ms (None when not expiring)
        attributes: Domain attributes keyed by field name
    """

    type_name: str
    id: str
    key: PrimaryKey
    created_at: int
    updated_at: int
    version: Optional[int] = None
    expires_at: Optional[int] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    ttl_field: Optional[str] = field(default=None, repr=False)

    def __getitem__(self, name: str) -> Any:
        return self.to_dict()[name]

    def __contains__(self, name: object) -> bool:
        return name in self.to_dict()

    def get(self, name: str, default: Any = None) -> Any:
        value = self.to_dict().get(name)
        return default if value is None else value

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a camelCase dict usable as create/update input."""
        data: Dict[str, Any] = dict(self.attributes)
        data["id"] = self.id
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        if self.version is not None:
            data["version"] = self.version
        if self.ttl_field is not None:
            data[self.ttl_field] = self.expires_at
        return data


@dataclass(frozen=True)
class Increment:
    """``SET col = col + amount`` or ``if_not_exists(col, start) + amount``."""

    amount: int
    start: Optional[int] = None


@dataclass
class WriteDirective:
    """Attribute changes applied atomically to one item.

    Attributes:
        key: Target primary key
        assignments: column -> value, always written
        assign_if_absent: column -> value, written only if the column is unset
        increments: column -> Increment
        removals: columns to delete
    """

    key: PrimaryKey
    assignments: Dict[str, Any] = field(default_factory=dict)
    assign_if_absent: Dict[str, Any] = field(default_factory=dict)
    increments: Dict[str, Increment] = field(default_factory=dict)
    removals: Tuple[str, ...] = ()

    def columns(self) -> Iterator[str]:
        yield from self.assignments
        yield from self.assign_if_absent
        yield from self.increments
        yield from self.removals

    def is_empty(self) -> bool:
        return not any(True for _ in self.columns())


WriteInput = Union[Mapping[str, Any], Item]


def _as_mapping(data: WriteInput) -> Mapping[str, Any]:
    if isinstance(data, Item):
        return data.to_dict()
    return data


def _plain(value: Any) -> Any:
    """Convert Decimal (and containers of Decimal) to int/float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_plain(v) for v in value}
    return value


def marshall_value(field_def: FieldDef, value: Any) -> Any:
    """Convert a domain value to its storage representation."""
    if value is None:
        return None
    kind = field_def.kind
    if isinstance(value, Enum):
        value = value.value
    if kind == FieldKind.STRING:
        return str(value)
    if kind == FieldKind.INTEGER:
        return int(value)
    if kind == FieldKind.FLOAT:
        return float(value)
    if kind == FieldKind.BOOLEAN:
        return bool(value)
    if kind == FieldKind.DATE:
        return to_epoch_ms(value)
    if kind == FieldKind.JSON:
        return dict(value)
    if kind == FieldKind.LIST_STRING:
        return [str(v) for v in value]
    raise ValueError(f"Unsupported field kind {kind}")


def unmarshall_value(field_def: FieldDef, value: Any) -> Any:
    """Convert a stored value back to its domain representation."""
    if value is None:
        return None
    kind = field_def.kind
    if kind in (FieldKind.INTEGER, FieldKind.DATE):
        return int(value)
    if kind == FieldKind.FLOAT:
        return float(value)
    if kind == FieldKind.BOOLEAN:
        return bool(value)
    if kind == FieldKind.LIST_STRING:
        return list(value)
    return _plain(value)


class ComputedModel(Mapping[str, Any]):
    """A model whose computed fields are evaluated lazily, on first access.

    Compute functions receive this view, so one computed field may read
    another regardless of declaration order. A field read while its own
    value is still being computed reads as None.
    """

    def __init__(
        self,
        entity_type: EntityType,
        data: Mapping[str, Any],
        only_missing: bool = False,
    ) -> None:
        self._data = dict(data)
        self._pending = {
            f.name: f.compute
            for f in entity_type.computed_fields
            if not (only_missing and self._data.get(f.name) is not None)
        }
        self._values: Dict[str, Any] = {}

    def __getitem__(self, name: str) -> Any:
        compute = self._pending.get(name)
        if compute is None:
            return self._data[name]
        if name not in self._values:
            self._values[name] = None
            self._values[name] = compute(self)
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        yield from (name for name in self._pending if name not in self._data)

    def __len__(self) -> int:
        return len(self._data.keys() | self._pending.keys())


def resolve_computed_fields(
    entity_type: EntityType,
    data: Mapping[str, Any],
    only_missing: bool = False,
) -> Dict[str, Any]:
    """Return ``data`` with every computed field evaluated.

    On writes the computed value replaces whatever the caller passed. With
    ``only_missing`` (reads), stored values win and only absent or null
    fields are computed.
    """
    if not entity_type.computed_fields:
        return dict(data)
    return dict(ComputedModel(entity_type, data, only_missing=only_missing))


def _require_fields(entity_type: EntityType, data: Mapping[str, Any]) -> None:
    for f in entity_type.fields:
        if f.required and data.get(f.name) is None:
            raise ValueError(f"{entity_type.name} requires field '{f.name}'")


def _index_columns(
    entity_type: EntityType,
    data: Mapping[str, Any],
    now_ms: int,
    created_at: int,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Render secondary index columns.

    Returns:
        (always-written columns, columns written only if absent). Index
        columns that embed createdAt land in the second map.
    """
    attrs = dict(data)
    attrs["createdAt"] = created_at
    attrs["updatedAt"] = now_ms

    assignments: Dict[str, Any] = {}
    if_absent: Dict[str, Any] = {}
    for index in entity_type.indexes:
        try:
            partition, sort = derive_index_key(entity_type, index.name, attrs, now_ms=now_ms)
        except MissingKeyAttributeError as e:
            # sparse index: item is simply not projected
            logger.debug(
                "Skipping index column",
                extra={"entity_type": entity_type.name, "index": index.name, "field": e.field_name},
            )
            continue

        if index.kind == IndexKind.GSI:
            target = if_absent if "createdAt" in (index.partition.fields if index.partition else ()) else assignments
            target[index.partition_attribute] = partition
        if sort is not None and index.sort_attribute is not None:
            target = if_absent if "createdAt" in index.sort.fields else assignments
            target[index.sort_attribute] = sort
    return assignments, if_absent


def _domain_columns(
    entity_type: EntityType,
    data: Mapping[str, Any],
) -> Tuple[Dict[str, Any], Tuple[str, ...]]:
    assignments: Dict[str, Any] = {}
    removals = []
    for f in entity_type.fields:
        if f.name not in data:
            continue
        value = data[f.name]
        if value is None:
            removals.append(f.column_name)
            continue
        assignments[f.column_name] = marshall_value(f, value)
    return assignments, tuple(removals)


def _ttl_columns(
    entity_type: EntityType,
    data: Mapping[str, Any],
    now_ms: int,
) -> Tuple[Dict[str, Any], Tuple[str, ...]]:
    ttl = entity_type.ttl
    if ttl is None:
        return {}, ()
    if ttl.field_name in data:
        value = data[ttl.field_name]
        if value is None:
            return {}, (TTL_COLUMN,)
        return {TTL_COLUMN: to_epoch_ms(value)}, ()
    if ttl.duration_ms is not None:
        return {TTL_COLUMN: now_ms + ttl.duration_ms}, ()
    return {}, ()


def marshall_for_create(
    entity_type: EntityType,
    data: WriteInput,
    now_ms: int,
) -> WriteDirective:
    """Build the directive for writing a brand new item.

    Both timestamps are ``now_ms`` and versioned types start at version 1.

    Raises:
        ValueError: If a required field is missing
        MissingKeyAttributeError: If a key attribute is missing
    """
    data = resolve_computed_fields(entity_type, _as_mapping(data))
    _require_fields(entity_type, data)
    key = derive_primary_key(entity_type, data)

    domain, _ = _domain_columns(entity_type, data)
    ttl_set, _ = _ttl_columns(entity_type, data, now_ms)
    index_set, index_if_absent = _index_columns(entity_type, data, now_ms, now_ms)

    assignments: Dict[str, Any] = {TYPE_COLUMN: entity_type.name}
    assignments.update(domain)
    assignments[CREATED_COLUMN] = now_ms
    assignments[UPDATED_COLUMN] = now_ms
    if entity_type.versioned:
        assignments[VERSION_COLUMN] = 1
    assignments.update(ttl_set)
    assignments.update(index_set)
    assignments.update(index_if_absent)
    return WriteDirective(key=key, assignments=assignments)


def marshall_for_update(
    entity_type: EntityType,
    data: WriteInput,
    now_ms: int,
) -> WriteDirective:
    """Build the directive for updating an existing item.

    ``data`` must carry the item's current ``version`` (versioned types);
    the directive writes ``version + 1``. ``createdAt`` is never assigned.

    Raises:
        ValueError: If a required field or the current version is missing
        MissingKeyAttributeError: If a key attribute is missing
    """
    data = resolve_computed_fields(entity_type, _as_mapping(data))
    _require_fields(entity_type, data)
    key = derive_primary_key(entity_type, data)

    domain, removals = _domain_columns(entity_type, data)
    ttl_set, ttl_removals = _ttl_columns(entity_type, data, now_ms)
    created_at = data.get("createdAt")
    index_set, index_if_absent = _index_columns(
        entity_type,
        data,
        now_ms,
        to_epoch_ms(created_at) if created_at is not None else now_ms,
    )

    assignments: Dict[str, Any] = {TYPE_COLUMN: entity_type.name}
    assignments.update(domain)
    assignments[UPDATED_COLUMN] = now_ms
    if entity_type.versioned:
        version = data.get("version")
        if version is None:
            raise ValueError(f"Updating {entity_type.name} requires the current version")
        assignments[VERSION_COLUMN] = int(version) + 1
    assignments.update(ttl_set)
    assignments.update(index_set)
    return WriteDirective(
        key=key,
        assignments=assignments,
        assign_if_absent=index_if_absent,
        removals=removals + ttl_removals,
    )


def marshall_for_blind_write(
    entity_type: EntityType,
    data: WriteInput,
    now_ms: int,
) -> WriteDirective:
    """Build the directive for an unconditional upsert.

    createdAt is written only if absent and the version is incremented
    from whatever is stored (0 when new). Any ``version`` in ``data`` is
    ignored.
    """
    data = resolve_computed_fields(entity_type, _as_mapping(data))
    _require_fields(entity_type, data)
    key = derive_primary_key(entity_type, data)

    domain, removals = _domain_columns(entity_type, data)
    ttl_set, ttl_removals = _ttl_columns(entity_type, data, now_ms)
    index_set, index_if_absent = _index_columns(entity_type, data, now_ms, now_ms)

    assignments: Dict[str, Any] = {TYPE_COLUMN: entity_type.name}
    assignments.update(domain)
    assignments[UPDATED_COLUMN] = now_ms
    assignments.update(ttl_set)
    assignments.update(index_set)

    if_absent = {CREATED_COLUMN: now_ms}
    if_absent.update(index_if_absent)

    increments = {}
    if entity_type.versioned:
        increments[VERSION_COLUMN] = Increment(1, start=0)
    return WriteDirective(
        key=key,
        assignments=assignments,
        assign_if_absent=if_absent,
        increments=increments,
        removals=removals + ttl_removals,
    )


def marshall_for_touch(
    entity_type: EntityType,
    key: PrimaryKey,
    now_ms: int,
) -> WriteDirective:
    """Build the directive for touch: version + 1 and expiry extension.

    Raises:
        ValueError: If the type is neither versioned nor expiring
    """
    increments: Dict[str, Increment] = {}
    if entity_type.versioned:
        increments[VERSION_COLUMN] = Increment(1)
    if entity_type.ttl is not None and entity_type.ttl.duration_ms is not None:
        increments[TTL_COLUMN] = Increment(entity_type.ttl.duration_ms, start=now_ms)
    if not increments:
        raise ValueError(f"{entity_type.name} is neither versioned nor expiring; nothing to touch")
    return WriteDirective(key=key, increments=increments)


def _required_internal(entity_type: EntityType, raw: Mapping[str, Any], column: str, label: str) -> Any:
    value = raw.get(column)
    if value is None:
        raise DataIntegrityError(
            f"Expected {label} to be non-null on {entity_type.name}",
            details={"type_name": entity_type.name, "column": column},
        )
    return value


def check_type_tag(entity_type: EntityType, raw: Mapping[str, Any]) -> None:
    """Raise DataIntegrityError unless ``raw`` is tagged with ``entity_type``."""
    found = raw.get(TYPE_COLUMN)
    if found != entity_type.name:
        raise DataIntegrityError(
            f"Expected to load a {entity_type.name} but loaded {found} instead",
            details={"expected": entity_type.name, "found": found, "pk": raw.get("pk")},
        )


def unmarshall(entity_type: EntityType, raw: Mapping[str, Any]) -> Item:
    """Decode a stored record.

    Raises:
        DataIntegrityError: On a type tag mismatch, or when an internal
            column or required field is absent or null
    """
    check_type_tag(entity_type, raw)

    pk = _required_internal(entity_type, raw, "pk", "pk")
    sk = _required_internal(entity_type, raw, "sk", "sk") if entity_type.is_composite else None
    created_at = _required_internal(entity_type, raw, CREATED_COLUMN, "createdAt")
    updated_at = _required_internal(entity_type, raw, UPDATED_COLUMN, "updatedAt")
    version = None
    if entity_type.versioned:
        version = int(_required_internal(entity_type, raw, VERSION_COLUMN, "version"))

    attributes: Dict[str, Any] = {}
    for f in entity_type.fields:
        if f.column_name in raw:
            value = raw[f.column_name]
        else:
            value = raw.get(f.name)
        attributes[f.name] = unmarshall_value(f, value)

    if entity_type.computed_fields:
        model: Dict[str, Any] = {
            "createdAt": int(created_at),
            "updatedAt": int(updated_at),
            "version": version,
        }
        model.update(attributes)
        resolved = resolve_computed_fields(entity_type, model, only_missing=True)
        for f in entity_type.computed_fields:
            attributes[f.name] = resolved[f.name]

    for f in entity_type.fields:
        if f.required and attributes[f.name] is None:
            raise DataIntegrityError(
                f"Expected {f.name} to be non-null on {entity_type.name}",
                details={"type_name": entity_type.name, "field": f.name},
            )

    expires_at = raw.get(TTL_COLUMN) if entity_type.ttl is not None else None
    key = PrimaryKey(partition=str(pk), sort=None if sk is None else str(sk))
    return Item(
        type_name=entity_type.name,
        id=encode_node_id(entity_type.name, key),
        key=key,
        created_at=int(created_at),
        updated_at=int(updated_at),
        version=version,
        expires_at=None if expires_at is None else int(expires_at),
        attributes=attributes,
        ttl_field=entity_type.ttl.field_name if entity_type.ttl is not None else None,
    )
