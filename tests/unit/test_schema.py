"""
Unit tests for schema type definitions.

Tests cover:
- Field definitions and column names
- Key templates and secondary index validation
- Entity type validation
"""

import pytest

from dataplane.tabledata.schema import (
    EntityType,
    FieldKind,
    IndexKind,
    KeyTemplate,
    SecondaryIndexDef,
    TtlConfig,
    field,
)
from tests.entities import Subscription, UserLogin


class TestFieldDef:
    """Tests for FieldDef."""

    def test_create_string_field(self):
        f = field("externalId", "str", required=True)

        assert f.kind == FieldKind.STRING
        assert f.required
        assert f.column_name == "external_id"

    def test_explicit_column(self):
        assert field("login", "str", column="user_login").column_name == "user_login"

    def test_invalid_kind(self):
        with pytest.raises(ValueError, match="Invalid field kind"):
            field("x", "uuid")

    @pytest.mark.parametrize("name", ["id", "createdAt", "updatedAt", "version"])
    def test_reserved_names(self, name):
        with pytest.raises(ValueError):
            field(name, "str")

    @pytest.mark.parametrize("column", ["_et", "pk", "sk", "ttl"])
    def test_reserved_columns(self, column):
        with pytest.raises(ValueError, match="reserved"):
            field("value", "str", column=column)


class TestSecondaryIndexDef:
    """Tests for SecondaryIndexDef."""

    def test_gsi_attributes(self):
        index = UserLogin.get_index("gsi1")

        assert index.partition_attribute == "gsi1pk"
        assert index.sort_attribute == "gsi1sk"
        assert index.fields == ("vendor", "login", "updatedAt")

    def test_lsi_shares_pk(self):
        index = UserLogin.get_index("lsi1")

        assert index.partition_attribute == "pk"
        assert index.sort_attribute == "lsi1sk"

    def test_lsi_rejects_partition(self):
        with pytest.raises(ValueError):
            SecondaryIndexDef(
                "lsi2",
                IndexKind.LSI,
                partition=KeyTemplate("X", ()),
                sort=KeyTemplate("Y", ()),
            )

    def test_lsi_requires_sort(self):
        with pytest.raises(ValueError):
            SecondaryIndexDef("lsi2", IndexKind.LSI)

    def test_gsi_requires_partition(self):
        with pytest.raises(ValueError):
            SecondaryIndexDef("gsi2", IndexKind.GSI, sort=KeyTemplate("Y", ()))


class TestEntityType:
    """Tests for EntityType."""

    def test_composite(self):
        assert UserLogin.is_composite
        assert UserLogin.key_fields == ("vendor", "externalId", "login")

    def test_key_field_must_be_declared(self):
        with pytest.raises(ValueError, match="not a declared field"):
            EntityType(name="Bad", partition_key=KeyTemplate("BAD", ("missing",)))

    def test_name_cannot_contain_colon(self):
        with pytest.raises(ValueError):
            EntityType(name="Bad:Type", partition_key=KeyTemplate("BAD", ()))

    def test_duplicate_fields(self):
        with pytest.raises(ValueError, match="Duplicate field"):
            EntityType(
                name="Dup",
                partition_key=KeyTemplate("DUP", ()),
                fields=(field("a", "str"), field("a", "int")),
            )

    def test_index_may_reference_timestamps(self):
        entity_type = EntityType(
            name="Event",
            partition_key=KeyTemplate("EVENT", ("eventId",)),
            fields=(field("eventId", "str", required=True),),
            indexes=(
                SecondaryIndexDef(
                    "gsi1",
                    IndexKind.GSI,
                    partition=KeyTemplate("EVENTS", ()),
                    sort=KeyTemplate("AT", ("createdAt",)),
                ),
            ),
        )
        assert entity_type.get_index("gsi1") is not None

    def test_index_unknown_field(self):
        with pytest.raises(ValueError, match="unknown field"):
            EntityType(
                name="Event",
                partition_key=KeyTemplate("EVENT", ()),
                indexes=(
                    SecondaryIndexDef("gsi1", IndexKind.GSI, partition=KeyTemplate("X", ("nope",))),
                ),
            )

    def test_ttl_field_must_not_be_declared(self):
        with pytest.raises(ValueError, match="TTL field"):
            EntityType(
                name="Session",
                partition_key=KeyTemplate("SESSION", ()),
                fields=(field("expires", "date"),),
                ttl=TtlConfig(field_name="expires"),
            )

    def test_ttl_duration_positive(self):
        with pytest.raises(ValueError):
            TtlConfig(duration_ms=0)

    def test_computed_key_field_rejected(self):
        with pytest.raises(ValueError, match="cannot be computed"):
            EntityType(
                name="Derived",
                partition_key=KeyTemplate("DERIVED", ("slug",)),
                fields=(field("slug", "str", compute=lambda m: "x"),),
            )

    def test_computed_fields(self):
        assert [f.name for f in Subscription.computed_fields] == ["indexedPlanName"]
        assert Subscription.get_field("indexedPlanName").to_dict()["computed"] is True
        assert "computed" not in Subscription.get_field("planName").to_dict()
