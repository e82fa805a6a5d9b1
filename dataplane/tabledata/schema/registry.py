"""
Entity type registry for tabledata.

The registry maps type tags to entity type definitions. Every read path
resolves the expected type through it, and the generic node-id lookup uses
it to find the type named inside an opaque id.

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new types can be registered
    - Type names are unique; a name is the type tag stored in ``_et``
    - Selection is a lookup by tag, never subclassing

How to change safely:
    - Register all types before calling freeze()
    - Pass the registry explicitly; there is no process-global instance

Example:
    >>> registry = EntityRegistry()
    >>> registry.register(UserLogin)
    >>> registry.freeze()
    >>> registry.require("UserLogin")
    EntityType(name='UserLogin', ...)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterable, Iterator, Optional

from ..errors import UnknownEntityTypeError
from .types import EntityType

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a type name twice."""
    pass


class EntityRegistry:
    """Registry of every entity type stored in the table.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the registered types (computed on freeze)
    """

    def __init__(self, entity_types: Iterable[EntityType] = ()) -> None:
        self._types: Dict[str, EntityType] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()
        for entity_type in entity_types:
            self.register(entity_type)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    def register(self, entity_type: EntityType) -> None:
        """Register an entity type.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity type '{entity_type.name}': registry is frozen"
                )
            if entity_type.name in self._types:
                raise DuplicateRegistrationError(
                    f"Entity type '{entity_type.name}' is already registered"
                )
            self._types[entity_type.name] = entity_type
            logger.debug(f"Registered entity type: {entity_type.name}")

    def get(self, name: str) -> Optional[EntityType]:
        return self._types.get(name)

    def require(self, name: str) -> EntityType:
        """Get an entity type or raise UnknownEntityTypeError."""
        entity_type = self._types.get(name)
        if entity_type is None:
            raise UnknownEntityTypeError(name)
        return entity_type

    def freeze(self) -> str:
        """Freeze the registry and compute its fingerprint.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
            self._fingerprint = "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
            self._frozen = True
            logger.info(
                f"Entity registry frozen with {len(self._types)} types, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def to_dict(self) -> dict:
        return {"entity_types": [self._types[name].to_dict() for name in sorted(self._types)]}

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[EntityType]:
        return iter(list(self._types.values()))

    def __len__(self) -> int:
        return len(self._types)
