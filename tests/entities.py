"""
Entity types and helpers shared by the test suite.
"""

from boto3.dynamodb.types import TypeSerializer

from dataplane.tabledata.schema import (
    EntityType,
    IndexKind,
    KeyTemplate,
    SecondaryIndexDef,
    TtlConfig,
    field,
)

START_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000

STREAM_ARN = (
    "arn:aws:dynamodb:us-east-1:123456789012:table/Entities/stream/2024-01-01T00:00:00.000"
)
TABLE_ARN = "arn:aws:dynamodb:us-east-1:123456789012:table/Entities"


UserLogin = EntityType(
    name="UserLogin",
    partition_key=KeyTemplate("USER", ("vendor", "externalId")),
    sort_key=KeyTemplate("LOGIN", ("login",)),
    fields=(
        field("externalId", "str", required=True),
        field("login", "str", required=True),
        field("vendor", "str", required=True),
        field("displayName", "str"),
    ),
    indexes=(
        SecondaryIndexDef(
            name="gsi1",
            kind=IndexKind.GSI,
            partition=KeyTemplate("LOGIN", ("vendor", "login")),
            sort=KeyTemplate("MODIFIED", ("updatedAt",)),
        ),
        SecondaryIndexDef(
            name="lsi1",
            kind=IndexKind.LSI,
            sort=KeyTemplate("CREATED", ("createdAt",)),
        ),
    ),
)

Account = EntityType(
    name="Account",
    partition_key=KeyTemplate("ACCOUNT", ("accountId",)),
    fields=(
        field("accountId", "str", required=True),
        field("plan", "str", required=True),
        field("seats", "int"),
    ),
)

AccountSummary = EntityType(
    name="AccountSummary",
    partition_key=KeyTemplate("SUMMARY", ("accountId",)),
    fields=(
        field("accountId", "str", required=True),
        field("plan", "str", required=True),
        field("seats", "int"),
    ),
)

UserSession = EntityType(
    name="UserSession",
    partition_key=KeyTemplate("SESSION", ("sessionId",)),
    fields=(
        field("sessionId", "str", required=True),
        field("session", "json"),
    ),
    ttl=TtlConfig(field_name="expires", duration_ms=DAY_MS),
)


def indexed_plan_name(model):
    """The plan to index under: the last plan once a subscription is cancelled."""
    return model.get("lastPlanName") if model.get("cancelled") else model.get("planName")


Subscription = EntityType(
    name="Subscription",
    partition_key=KeyTemplate("SUBSCRIPTION", ("subscriptionId",)),
    fields=(
        field("subscriptionId", "str", required=True),
        field("planName", "str"),
        field("lastPlanName", "str"),
        field("cancelled", "bool"),
        field("indexedPlanName", "str", compute=indexed_plan_name),
    ),
    indexes=(
        SecondaryIndexDef(
            name="gsi1",
            kind=IndexKind.GSI,
            partition=KeyTemplate("PLAN", ("indexedPlanName",)),
            sort=KeyTemplate("SUBSCRIPTION", ("subscriptionId",)),
        ),
    ),
)


ALL_TYPES = (UserLogin, Account, AccountSummary, UserSession, Subscription)


class TickingClock:
    """Returns ``now`` and advances it by ``step`` on every call."""

    def __init__(self, start: int = START_MS, step: int = 1000) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


_serializer = TypeSerializer()


def stream_record(
    sequence_number="1",
    event_name="INSERT",
    new_image=None,
    old_image=None,
    keys=None,
    event_id=None,
):
    """Raw stream record as delivered to the dispatcher.

    Images are plain dicts; they are wire-encoded here.
    """
    image = new_image if new_image is not None else old_image
    if keys is None and image is not None:
        keys = {k: v for k, v in image.items() if k in ("pk", "sk")}
    stream = {
        "ApproximateCreationDateTime": START_MS // 1000,
        "Keys": {k: _serializer.serialize(v) for k, v in (keys or {}).items()},
        "StreamViewType": "NEW_AND_OLD_IMAGES",
    }
    if sequence_number is not None:
        stream["SequenceNumber"] = sequence_number
    if new_image is not None:
        stream["NewImage"] = {k: _serializer.serialize(v) for k, v in new_image.items()}
    if old_image is not None:
        stream["OldImage"] = {k: _serializer.serialize(v) for k, v in old_image.items()}
    return {
        "eventID": event_id or f"evt-{sequence_number}",
        "eventName": event_name,
        "eventSourceARN": STREAM_ARN,
        "dynamodb": stream,
    }


def login_image(login, version=1):
    """Stored UserLogin record for ``login``."""
    return {
        "pk": "USER#GITHUB#8943",
        "sk": f"LOGIN#{login}",
        "_et": "UserLogin",
        "_ct": START_MS,
        "_md": START_MS,
        "_v": version,
        "external_id": "8943",
        "login": login,
        "vendor": "GITHUB",
    }


def account_image(account_id="a-1", plan="free", seats=1, version=1):
    """Stored Account record."""
    return {
        "pk": f"ACCOUNT#{account_id}",
        "_et": "Account",
        "_ct": START_MS,
        "_md": START_MS,
        "_v": version,
        "account_id": account_id,
        "plan": plan,
        "seats": seats,
    }
