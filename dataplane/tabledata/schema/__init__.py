"""
Schema module for tabledata.

This module describes how entity types live in the single shared table:
- Type definitions (EntityType, FieldDef, KeyTemplate, SecondaryIndexDef)
- The registry mapping type tags to definitions

Invariants:
    - A type name is the type tag stored in every record of that type
    - Key templates are deterministic; equal attributes give equal keys
    - All entity types must be registered before the store serves traffic
"""

from .registry import DuplicateRegistrationError, EntityRegistry, RegistryFrozenError
from .types import (
    EntityType,
    FieldDef,
    FieldKind,
    IndexKind,
    KeyTemplate,
    SecondaryIndexDef,
    TtlConfig,
    field,
)

__all__ = [
    # Types
    "EntityType",
    "FieldDef",
    "FieldKind",
    "IndexKind",
    "KeyTemplate",
    "SecondaryIndexDef",
    "TtlConfig",
    "field",
    # Registry
    "EntityRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
]
