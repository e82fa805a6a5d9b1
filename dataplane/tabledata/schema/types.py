"""
Core type definitions for the tabledata schema system.

This module defines how an entity type is laid out in the single shared
table:
- FieldDef: One domain attribute and the column it is stored in
- KeyTemplate: How a partition or sort key string is built from attributes
- SecondaryIndexDef: An alternate key pair (GSI or LSI)
- TtlConfig: Expiry behaviour for entity types that age out
- EntityType: The complete record shape, keyed by its type tag

Invariants:
    - Entity type names are type tags; they are written into every record
    - Key fields must be declared fields of the entity type
    - createdAt, updatedAt, version and id are managed by the codec and
      cannot be declared
    - LSIs share the table partition key and only declare a sort template
    - Computed fields may feed secondary index keys but never the primary
      key, which callers must be able to address directly

How to change safely:
    - Changing a key template changes every derived key; existing items
      become unreachable under the new key
    - Add new optional fields freely; new required fields break reads of
      older items

Example:
    >>> UserLogin = EntityType(
    ...     name="UserLogin",
    ...     partition_key=KeyTemplate("USER", ("vendor", "externalId")),
    ...     sort_key=KeyTemplate("LOGIN", ("login",)),
    ...     fields=(
    ...         field("externalId", "str", required=True),
    ...         field("login", "str", required=True),
    ...         field("vendor", "str", required=True),
    ...     ),
    ... )
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Callable, Mapping

RESERVED_FIELD_NAMES = frozenset({"id", "createdAt", "updatedAt", "version"})

TIMESTAMP_FIELDS = frozenset({"createdAt", "updatedAt"})


def snake_case(name: str) -> str:
    """Convert a camelCase field name to its snake_case column name."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class FieldKind(Enum):
    """Supported field types.

    These map to storage representations in the table.
    """

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    DATE = "date"  # Unix milliseconds
    JSON = "json"  # Arbitrary JSON object, stored as a map
    LIST_STRING = "list_str"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


@dataclass(frozen=True)
class FieldDef:
    """Definition of one domain attribute.

    Attributes:
        name: camelCase attribute name used by callers
        kind: The data type of the field
        required: Whether the field must be present on every stored item
        column: Storage column name (defaults to snake_case of name)
        description: Human-readable description
        compute: Derives the value from the whole model on every write;
            also fills the value on read when none was stored
    """

    name: str
    kind: FieldKind
    required: bool = False
    column: str | None = None
    description: str = ""
    compute: Callable[[Mapping[str, Any]], Any] | None = dataclass_field(
        default=None, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name in RESERVED_FIELD_NAMES:
            raise ValueError(f"'{self.name}' is managed automatically and cannot be declared")
        if self.column is None:
            object.__setattr__(self, "column", snake_case(self.name))
        if self.column.startswith("_") or self.column in ("pk", "sk", "ttl"):
            raise ValueError(f"Column '{self.column}' is reserved for internal use")

    @property
    def column_name(self) -> str:
        return self.column or snake_case(self.name)

    @property
    def is_computed(self) -> bool:
        return self.compute is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "required": self.required,
            "column": self.column,
        }
        if self.is_computed:
            data["computed"] = True
        return data


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    column: str | None = None,
    description: str = "",
    compute: Callable[[Mapping[str, Any]], Any] | None = None,
) -> FieldDef:
    """Shorthand for declaring a FieldDef with a string kind."""
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        column=column,
        description=description,
        compute=compute,
    )


@dataclass(frozen=True)
class KeyTemplate:
    """Template for a key string: ``prefix#value1#value2``.

    Attributes:
        prefix: Constant leading segment (may be empty)
        fields: Attribute names whose values follow the prefix, in order
    """

    prefix: str
    fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))

    def to_dict(self) -> dict[str, Any]:
        return {"prefix": self.prefix, "fields": list(self.fields)}


class IndexKind(Enum):
    """Secondary index kinds."""

    GSI = "gsi"
    LSI = "lsi"


@dataclass(frozen=True)
class SecondaryIndexDef:
    """An alternate partition/sort key projection of the same items.

    GSIs store their keys in ``{name}pk`` / ``{name}sk``. LSIs share the
    table's ``pk`` and store only ``{name}sk``.

    Attributes:
        name: Index name, as provisioned on the table
        kind: GSI or LSI
        partition: Partition template (GSI only)
        sort: Sort template (optional for GSIs, required for LSIs)
    """

    name: str
    kind: IndexKind
    partition: KeyTemplate | None = None
    sort: KeyTemplate | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Index name cannot be empty")
        if self.kind == IndexKind.LSI:
            if self.partition is not None:
                raise ValueError(f"LSI '{self.name}' cannot declare a partition template")
            if self.sort is None:
                raise ValueError(f"LSI '{self.name}' requires a sort template")
        elif self.partition is None:
            raise ValueError(f"GSI '{self.name}' requires a partition template")

    @property
    def partition_attribute(self) -> str:
        return f"{self.name}pk" if self.kind == IndexKind.GSI else "pk"

    @property
    def sort_attribute(self) -> str | None:
        if self.sort is None:
            return None
        return f"{self.name}sk"

    @property
    def fields(self) -> tuple[str, ...]:
        names: tuple[str, ...] = ()
        if self.partition:
            names += self.partition.fields
        if self.sort:
            names += self.sort.fields
        return names

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "partition": self.partition.to_dict() if self.partition else None,
            "sort": self.sort.to_dict() if self.sort else None,
        }


@dataclass(frozen=True)
class TtlConfig:
    """Expiry behaviour.

    Attributes:
        field_name: Attribute exposed to callers (stored in column ``ttl``)
        duration_ms: Default lifetime; also the extension applied by touch
    """

    field_name: str = "expires"
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        if self.duration_ms is not None and self.duration_ms <= 0:
            raise ValueError(f"duration_ms must be positive, got {self.duration_ms}")


@dataclass(frozen=True)
class EntityType:
    """Definition of an entity type stored in the shared table.

    Attributes:
        name: Type tag, written to ``_et`` on every record
        partition_key: Template for ``pk``
        sort_key: Template for ``sk`` (composite keys only)
        fields: Domain attributes
        indexes: Secondary indexes
        versioned: Whether optimistic-locking versions are tracked
        ttl: Expiry configuration, if the type ages out
        consistent_reads: Default read consistency for read/query
        description: Human-readable description
    """

    name: str
    partition_key: KeyTemplate
    sort_key: KeyTemplate | None = None
    fields: tuple[FieldDef, ...] = ()
    indexes: tuple[SecondaryIndexDef, ...] = ()
    versioned: bool = True
    ttl: TtlConfig | None = None
    consistent_reads: bool = False
    description: str = ""
    _fields_by_name: dict[str, FieldDef] = dataclass_field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.name or ":" in self.name:
            raise ValueError(f"Invalid entity type name '{self.name}'")
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "indexes", tuple(self.indexes))

        by_name: dict[str, FieldDef] = {}
        columns: set[str] = set()
        for f in self.fields:
            if f.name in by_name:
                raise ValueError(f"Duplicate field '{f.name}' in {self.name}")
            if f.column_name in columns:
                raise ValueError(f"Duplicate column '{f.column_name}' in {self.name}")
            by_name[f.name] = f
            columns.add(f.column_name)
        object.__setattr__(self, "_fields_by_name", by_name)

        for key_field in self.key_fields:
            if key_field not in by_name:
                raise ValueError(
                    f"Key field '{key_field}' of {self.name} is not a declared field"
                )
            if by_name[key_field].is_computed:
                raise ValueError(
                    f"Key field '{key_field}' of {self.name} cannot be computed"
                )

        index_names: set[str] = set()
        for index in self.indexes:
            if index.name in index_names:
                raise ValueError(f"Duplicate index '{index.name}' in {self.name}")
            index_names.add(index.name)
            for index_field in index.fields:
                if index_field not in by_name and index_field not in TIMESTAMP_FIELDS:
                    raise ValueError(
                        f"Index '{index.name}' of {self.name} references unknown field '{index_field}'"
                    )

        if self.ttl is not None and self.ttl.field_name in by_name:
            raise ValueError(
                f"TTL field '{self.ttl.field_name}' of {self.name} must not be declared as a field"
            )

    @property
    def is_composite(self) -> bool:
        return self.sort_key is not None

    @property
    def key_fields(self) -> tuple[str, ...]:
        names = self.partition_key.fields
        if self.sort_key is not None:
            names += self.sort_key.fields
        return names

    @property
    def computed_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if f.is_computed)

    def get_field(self, name: str) -> FieldDef | None:
        return self._fields_by_name.get(name)

    def get_index(self, name: str) -> SecondaryIndexDef | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "partition_key": self.partition_key.to_dict(),
            "sort_key": self.sort_key.to_dict() if self.sort_key else None,
            "fields": [f.to_dict() for f in self.fields],
            "indexes": [i.to_dict() for i in self.indexes],
            "versioned": self.versioned,
            "ttl": (
                {"field_name": self.ttl.field_name, "duration_ms": self.ttl.duration_ms}
                if self.ttl
                else None
            ),
            "consistent_reads": self.consistent_reads,
        }
