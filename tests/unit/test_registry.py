"""
Unit tests for the entity registry.

Tests cover:
- Type registration and lookup
- Registry freezing
- Fingerprint generation
- Duplicate detection
"""

import pytest

from dataplane.tabledata.errors import UnknownEntityTypeError
from dataplane.tabledata.schema import (
    DuplicateRegistrationError,
    EntityRegistry,
    EntityType,
    KeyTemplate,
    RegistryFrozenError,
    field,
)
from tests.entities import Account, UserLogin


class TestEntityRegistry:
    """Tests for EntityRegistry."""

    def test_register_and_get(self):
        """Can register an entity type and look it up by type tag."""
        registry = EntityRegistry()

        registry.register(UserLogin)

        assert registry.get("UserLogin") is UserLogin
        assert registry.require("UserLogin") is UserLogin
        assert "UserLogin" in registry
        assert len(registry) == 1

    def test_get_unknown_returns_none(self):
        assert EntityRegistry().get("Nope") is None

    def test_require_unknown_raises(self):
        with pytest.raises(UnknownEntityTypeError) as exc_info:
            EntityRegistry().require("Nope")

        assert exc_info.value.type_name == "Nope"

    def test_duplicate_name_raises(self):
        """Registering the same type tag twice raises error."""
        registry = EntityRegistry([Account])
        Other = EntityType(
            name="Account",
            partition_key=KeyTemplate("OTHER", ("x",)),
            fields=(field("x", "str"),),
        )

        with pytest.raises(DuplicateRegistrationError, match="already registered"):
            registry.register(Other)

    def test_freeze_registry(self):
        """Freezing returns a fingerprint."""
        registry = EntityRegistry([UserLogin])

        fingerprint = registry.freeze()

        assert registry.frozen
        assert fingerprint.startswith("sha256:")
        assert registry.fingerprint == fingerprint

    def test_freeze_twice_raises(self):
        registry = EntityRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.freeze()

    def test_register_after_freeze_raises(self):
        registry = EntityRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.register(UserLogin)

    def test_fingerprint_deterministic(self):
        """Registration order does not change the fingerprint."""
        first = EntityRegistry([UserLogin, Account])
        second = EntityRegistry([Account, UserLogin])

        assert first.freeze() == second.freeze()

    def test_fingerprint_changes_with_schema(self):
        first = EntityRegistry([UserLogin])
        second = EntityRegistry([UserLogin, Account])

        assert first.freeze() != second.freeze()

    def test_iterate(self):
        registry = EntityRegistry([UserLogin, Account])
        assert {t.name for t in registry} == {"UserLogin", "Account"}

    def test_to_dict(self):
        data = EntityRegistry([Account]).to_dict()

        assert data["entity_types"][0]["name"] == "Account"
        assert data["entity_types"][0]["partition_key"] == {
            "prefix": "ACCOUNT",
            "fields": ["accountId"],
        }
