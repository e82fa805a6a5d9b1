"""
Unit tests for the item codec.

Tests cover:
- Write directives for create, update, blind write and touch
- Secondary index columns (including sparse indexes)
- TTL handling
- Decoding and type tag integrity
- Computed fields
"""

from decimal import Decimal

import pytest

from dataplane.tabledata.codec.items import (
    Increment,
    check_type_tag,
    marshall_for_blind_write,
    marshall_for_create,
    marshall_for_touch,
    marshall_for_update,
    resolve_computed_fields,
    unmarshall,
)
from dataplane.tabledata.codec.keys import PrimaryKey
from dataplane.tabledata.errors import DataIntegrityError
from dataplane.tabledata.schema import EntityType, IndexKind, KeyTemplate, SecondaryIndexDef, field
from tests.entities import DAY_MS, Account, Subscription, UserLogin, UserSession

NOW = 1_700_000_000_000
ALICE = {"externalId": "8943", "login": "alice", "vendor": "GITHUB"}


def stored_login(**overrides):
    raw = {
        "pk": "USER#GITHUB#8943",
        "sk": "LOGIN#alice",
        "_et": "UserLogin",
        "_ct": Decimal(NOW),
        "_md": Decimal(NOW + 5),
        "_v": Decimal(3),
        "external_id": "8943",
        "login": "alice",
        "vendor": "GITHUB",
    }
    raw.update(overrides)
    return raw


class TestMarshallForCreate:
    """Tests for create directives."""

    def test_columns(self):
        directive = marshall_for_create(UserLogin, ALICE, NOW)

        assert directive.key == PrimaryKey("USER#GITHUB#8943", "LOGIN#alice")
        columns = directive.assignments
        assert columns["_et"] == "UserLogin"
        assert columns["_ct"] == NOW
        assert columns["_md"] == NOW
        assert columns["_v"] == 1
        assert columns["external_id"] == "8943"
        assert columns["login"] == "alice"
        assert columns["vendor"] == "GITHUB"

    def test_index_columns(self):
        columns = marshall_for_create(UserLogin, ALICE, NOW).assignments

        assert columns["gsi1pk"] == "LOGIN#GITHUB#alice"
        assert columns["gsi1sk"] == f"MODIFIED#{NOW}"
        assert columns["lsi1sk"] == f"CREATED#{NOW}"
        assert "lsi1pk" not in columns

    def test_missing_required_field(self):
        with pytest.raises(ValueError):
            marshall_for_create(Account, {"accountId": "a-1"}, NOW)

    def test_ttl_defaults_to_duration(self):
        directive = marshall_for_create(UserSession, {"sessionId": "s-1"}, NOW)
        assert directive.assignments["ttl"] == NOW + DAY_MS

    def test_explicit_ttl_wins(self):
        directive = marshall_for_create(UserSession, {"sessionId": "s-1", "expires": 42}, NOW)
        assert directive.assignments["ttl"] == 42

    def test_sparse_index_skipped(self):
        Tagged = EntityType(
            name="Tagged",
            partition_key=KeyTemplate("TAGGED", ("tagId",)),
            fields=(field("tagId", "str", required=True), field("tag", "str")),
            indexes=(
                SecondaryIndexDef("gsi2", IndexKind.GSI, partition=KeyTemplate("TAG", ("tag",))),
            ),
        )

        untagged = marshall_for_create(Tagged, {"tagId": "1"}, NOW).assignments
        tagged = marshall_for_create(Tagged, {"tagId": "1", "tag": "red"}, NOW).assignments

        assert "gsi2pk" not in untagged
        assert tagged["gsi2pk"] == "TAG#red"


class TestMarshallForUpdate:
    """Tests for update directives."""

    def test_bumps_version_and_keeps_created(self):
        directive = marshall_for_update(UserLogin, {**ALICE, "version": 3}, NOW)

        assert directive.assignments["_v"] == 4
        assert directive.assignments["_md"] == NOW
        assert "_ct" not in directive.assignments
        assert "_ct" not in directive.assign_if_absent

    def test_requires_version(self):
        with pytest.raises(ValueError):
            marshall_for_update(UserLogin, ALICE, NOW)

    def test_created_at_index_written_if_absent(self):
        directive = marshall_for_update(UserLogin, {**ALICE, "version": 1, "createdAt": 7}, NOW)

        assert directive.assign_if_absent["lsi1sk"] == "CREATED#7"
        assert directive.assignments["gsi1sk"] == f"MODIFIED#{NOW}"

    def test_none_removes_optional_field(self):
        directive = marshall_for_update(
            UserLogin, {**ALICE, "version": 1, "displayName": None}, NOW
        )
        assert "display_name" in directive.removals

    def test_none_ttl_removes_expiry(self):
        directive = marshall_for_update(
            UserSession, {"sessionId": "s-1", "version": 1, "expires": None}, NOW
        )
        assert "ttl" in directive.removals


class TestMarshallForBlindWrite:
    """Tests for blind write directives."""

    def test_upsert_columns(self):
        directive = marshall_for_blind_write(UserLogin, {**ALICE, "version": 99}, NOW)

        assert directive.assign_if_absent["_ct"] == NOW
        assert directive.increments["_v"] == Increment(1, start=0)
        assert "_v" not in directive.assignments


class TestMarshallForTouch:
    """Tests for touch directives."""

    def test_versioned_and_expiring(self):
        key = PrimaryKey("SESSION#s-1")
        directive = marshall_for_touch(UserSession, key, NOW)

        assert directive.key == key
        assert directive.increments["_v"] == Increment(1)
        assert directive.increments["ttl"] == Increment(DAY_MS, start=NOW)
        assert not directive.assignments

    def test_nothing_to_touch(self):
        Static = EntityType(
            name="Static",
            partition_key=KeyTemplate("STATIC", ("name",)),
            fields=(field("name", "str", required=True),),
            versioned=False,
        )
        with pytest.raises(ValueError):
            marshall_for_touch(Static, PrimaryKey("STATIC#x"), NOW)


class TestUnmarshall:
    """Tests for decoding stored records."""

    def test_decodes_item(self):
        item = unmarshall(UserLogin, stored_login(display_name="Alice"))

        assert item.type_name == "UserLogin"
        assert item.key == PrimaryKey("USER#GITHUB#8943", "LOGIN#alice")
        assert item.created_at == NOW
        assert item.updated_at == NOW + 5
        assert item.version == 3
        assert item["externalId"] == "8943"
        assert item["displayName"] == "Alice"
        assert isinstance(item.created_at, int)

    def test_to_dict(self):
        data = unmarshall(UserLogin, stored_login()).to_dict()

        assert data["createdAt"] == NOW
        assert data["version"] == 3
        assert data["login"] == "alice"
        assert data["id"]

    def test_decimal_coercion(self):
        raw = {
            "pk": "ACCOUNT#a-1",
            "_et": "Account",
            "_ct": Decimal(1),
            "_md": Decimal(2),
            "_v": Decimal(1),
            "account_id": "a-1",
            "plan": "pro",
            "seats": Decimal("12"),
        }
        item = unmarshall(Account, raw)

        assert item["seats"] == 12
        assert isinstance(item["seats"], int)

    def test_falls_back_to_field_name(self):
        raw = stored_login()
        del raw["external_id"]
        raw["externalId"] = "8943"

        assert unmarshall(UserLogin, raw)["externalId"] == "8943"

    def test_type_tag_mismatch(self):
        """A wrong type tag fails even when every other column is valid."""
        with pytest.raises(DataIntegrityError):
            unmarshall(UserLogin, stored_login(_et="UserSession"))

    def test_missing_type_tag(self):
        raw = stored_login()
        del raw["_et"]
        with pytest.raises(DataIntegrityError):
            unmarshall(UserLogin, raw)

    @pytest.mark.parametrize("column", ["_ct", "_md", "_v", "sk"])
    def test_missing_internal_column(self, column):
        raw = stored_login()
        del raw[column]
        with pytest.raises(DataIntegrityError):
            unmarshall(UserLogin, raw)

    def test_null_required_field(self):
        with pytest.raises(DataIntegrityError):
            unmarshall(UserLogin, stored_login(login=None))

    def test_check_type_tag(self):
        check_type_tag(UserLogin, stored_login())
        with pytest.raises(DataIntegrityError):
            check_type_tag(Account, stored_login())

    def test_expiry(self):
        raw = {
            "pk": "SESSION#s-1",
            "_et": "UserSession",
            "_ct": 1,
            "_md": 1,
            "_v": 1,
            "ttl": Decimal(NOW),
            "session_id": "s-1",
        }
        item = unmarshall(UserSession, raw)

        assert item.expires_at == NOW
        assert item.to_dict()["expires"] == NOW


class TestComputedFields:
    """Tests for computed fields."""

    def test_computed_value_drives_index_key(self):
        directive = marshall_for_create(
            Subscription,
            {"subscriptionId": "s-1", "planName": "free", "lastPlanName": "pro", "cancelled": True},
            NOW,
        )

        assert directive.assignments["indexed_plan_name"] == "pro"
        assert directive.assignments["gsi1pk"] == "PLAN#pro"
        assert directive.assignments["gsi1sk"] == "SUBSCRIPTION#s-1"

    def test_caller_value_is_replaced(self):
        directive = marshall_for_create(
            Subscription,
            {"subscriptionId": "s-1", "planName": "pro", "indexedPlanName": "stale"},
            NOW,
        )
        assert directive.assignments["indexed_plan_name"] == "pro"

    def test_recomputed_on_update_and_blind_write(self):
        data = {"subscriptionId": "s-1", "planName": "team", "version": 2}

        assert marshall_for_update(Subscription, data, NOW).assignments["gsi1pk"] == "PLAN#team"
        assert marshall_for_blind_write(Subscription, data, NOW).assignments["gsi1pk"] == "PLAN#team"

    def test_none_leaves_index_sparse(self):
        directive = marshall_for_create(Subscription, {"subscriptionId": "s-1"}, NOW)

        assert "indexed_plan_name" not in directive.assignments
        assert "gsi1pk" not in directive.assignments

    def test_update_to_none_removes_column(self):
        directive = marshall_for_update(Subscription, {"subscriptionId": "s-1", "version": 1}, NOW)
        assert "indexed_plan_name" in directive.removals

    def test_computed_fields_read_each_other(self):
        """Declaration order does not matter between computed fields."""
        Label = EntityType(
            name="Label",
            partition_key=KeyTemplate("LABEL", ("labelId",)),
            fields=(
                field("labelId", "str", required=True),
                field("shout", "str", compute=lambda m: m["slug"].upper()),
                field("slug", "str", compute=lambda m: m["labelId"].replace(" ", "-")),
            ),
        )

        resolved = resolve_computed_fields(Label, {"labelId": "big news"})

        assert resolved == {"labelId": "big news", "shout": "BIG-NEWS", "slug": "big-news"}

    def test_each_compute_runs_once(self):
        calls = []

        def count(model):
            calls.append(model["subscriptionId"])
            return "x"

        Counted = EntityType(
            name="Counted",
            partition_key=KeyTemplate("COUNTED", ("subscriptionId",)),
            fields=(
                field("subscriptionId", "str", required=True),
                field("value", "str", compute=count),
                field("copy", "str", compute=lambda m: m["value"]),
            ),
        )

        resolve_computed_fields(Counted, {"subscriptionId": "s-1"})

        assert calls == ["s-1"]

    def test_unmarshall_computes_missing_value(self):
        raw = {
            "pk": "SUBSCRIPTION#s-1",
            "_et": "Subscription",
            "_ct": NOW,
            "_md": NOW,
            "_v": 1,
            "subscription_id": "s-1",
            "plan_name": "pro",
        }

        assert unmarshall(Subscription, raw)["indexedPlanName"] == "pro"
        assert unmarshall(Subscription, {**raw, "indexed_plan_name": "legacy"})["indexedPlanName"] == "legacy"
