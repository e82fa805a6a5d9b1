"""
AWS DynamoDB table backend.

This module renders write directives, conditions and key conditions into
DynamoDB expressions and executes them with aiobotocore. Values cross the
wire through boto3's TypeSerializer/TypeDeserializer.

Invariants:
    - Every write uses UpdateItem with ReturnValues=ALL_NEW, so creates
      return the full item rather than an echo of the input
    - ConditionalCheckFailedException becomes WriteStatus.CONDITION_FAILED
    - Throughput and throttling errors become StoreTimeoutError
    - All other SDK errors become UnexpectedStoreError
    - Every call asks for consumed capacity (INDEXES)

How to change safely:
    - Test against DynamoDB Local or LocalStack before deploying
    - Keep expression placeholders generated; column names are not
      guaranteed to be valid expression tokens
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from aiobotocore.session import get_session
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError, EndpointConnectionError

from ..codec.items import WriteDirective
from ..codec.keys import PrimaryKey
from .base import (
    KeyCondition,
    KeyOperator,
    QueryPage,
    ReadResult,
    StoreConnectionError,
    StoreTimeoutError,
    UnexpectedStoreError,
    WriteCondition,
    WriteResult,
    WriteStatus,
)

logger = logging.getLogger(__name__)

THROTTLING_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
    }
)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def to_wire_value(value: Any) -> Any:
    """Convert Python values into something TypeSerializer accepts."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_wire_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire_value(v) for v in value]
    return value


def serialize(value: Any) -> Dict[str, Any]:
    return _serializer.serialize(to_wire_value(value))


def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: serialize(v) for k, v in item.items()}


def deserialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


class ExpressionBuilder:
    """Allocates ``#nN`` / ``:vN`` placeholders for one request."""

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Any] = {}
        self._name_for: Dict[str, str] = {}

    def name(self, column: str) -> str:
        placeholder = self._name_for.get(column)
        if placeholder is None:
            placeholder = f"#n{len(self._name_for)}"
            self._name_for[column] = placeholder
            self.names[placeholder] = column
        return placeholder

    def value(self, value: Any) -> str:
        placeholder = f":v{len(self.values)}"
        self.values[placeholder] = serialize(value)
        return placeholder

    def update_expression(self, directive: WriteDirective) -> str:
        sets: List[str] = []
        for column, value in directive.assignments.items():
            sets.append(f"{self.name(column)} = {self.value(value)}")
        for column, value in directive.assign_if_absent.items():
            n = self.name(column)
            sets.append(f"{n} = if_not_exists({n}, {self.value(value)})")
        for column, inc in directive.increments.items():
            n = self.name(column)
            if inc.start is None:
                sets.append(f"{n} = {n} + {self.value(inc.amount)}")
            else:
                sets.append(
                    f"{n} = if_not_exists({n}, {self.value(inc.start)}) + {self.value(inc.amount)}"
                )

        clauses = []
        if sets:
            clauses.append("SET " + ", ".join(sets))
        if directive.removals:
            clauses.append("REMOVE " + ", ".join(self.name(c) for c in directive.removals))
        return " ".join(clauses)

    def condition_expression(self, condition: Optional[WriteCondition]) -> Optional[str]:
        if condition is None or condition.is_empty:
            return None
        parts: List[str] = []
        if condition.exists is True:
            parts.append(f"attribute_exists({self.name('pk')})")
        elif condition.exists is False:
            parts.append(f"attribute_not_exists({self.name('pk')})")
        for column, value in condition.equals.items():
            parts.append(f"{self.name(column)} = {self.value(value)}")
        return " AND ".join(parts)

    def key_condition_expression(self, condition: KeyCondition) -> str:
        expr = f"{self.name(condition.partition_attr)} = {self.value(condition.partition_value)}"
        if condition.sort_attr is not None and condition.sort_value is not None:
            sk = self.name(condition.sort_attr)
            sv = self.value(condition.sort_value)
            if condition.operator == KeyOperator.BEGINS_WITH:
                expr += f" AND begins_with({sk}, {sv})"
            else:
                expr += f" AND {sk} {condition.operator.value} {sv}"
        return expr

    def apply(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.names:
            request["ExpressionAttributeNames"] = self.names
        if self.values:
            request["ExpressionAttributeValues"] = self.values
        return request


class DynamoDBTable:
    """DynamoDB implementation of the TableBackend protocol.

    Attributes:
        config: TableConfig instance

    Example:
        >>> table = DynamoDBTable(TableConfig(table_name="entities", region="us-east-1"))
        >>> await table.connect()
        >>> page = await table.query(KeyCondition("pk", "USER#GITHUB#8943"))
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._session = None
        self._client = None
        self._client_ctx = None
        self._connected = False

    @property
    def table_name(self) -> str:
        return self.config.table_name

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the DynamoDB client and verify the table exists.

        Raises:
            StoreConnectionError: If the endpoint is unreachable or the
                table does not exist
        """
        if self._connected:
            return

        try:
            self._session = get_session()

            client_config = {
                "region_name": self.config.region,
            }
            if self.config.endpoint_url:
                client_config["endpoint_url"] = self.config.endpoint_url

            self._client_ctx = self._session.create_client("dynamodb", **client_config)
            self._client = await self._client_ctx.__aenter__()

            await self._client.describe_table(TableName=self.table_name)

            self._connected = True
            logger.info(
                "Connected to DynamoDB",
                extra={
                    "table": self.table_name,
                    "region": self.config.region,
                    "endpoint": self.config.endpoint_url or "AWS",
                },
            )

        except EndpointConnectionError as e:
            raise StoreConnectionError(f"Failed to connect to DynamoDB endpoint: {e}") from e
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "ResourceNotFoundException":
                raise StoreConnectionError(f"DynamoDB table '{self.table_name}' not found") from e
            raise StoreConnectionError(f"DynamoDB error: {e}") from e

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing DynamoDB client: {e}")

        self._client = None
        self._client_ctx = None
        self._session = None
        self._connected = False
        logger.info("DynamoDB connection closed")

    async def health_check(self) -> bool:
        """Whether the table is reachable and ACTIVE."""
        if not self._client:
            return False
        try:
            response = await self._client.describe_table(TableName=self.table_name)
        except (ClientError, EndpointConnectionError) as e:
            logger.warning(f"DynamoDB health check failed: {e}")
            return False
        return response.get("Table", {}).get("TableStatus") == "ACTIVE"

    def _require_client(self) -> Any:
        if not self._client:
            raise StoreConnectionError("Not connected to DynamoDB")
        return self._client

    async def _call(self, operation: str, request: Dict[str, Any]) -> Dict[str, Any]:
        client = self._require_client()
        try:
            return await asyncio.wait_for(
                getattr(client, operation)(**request),
                timeout=self.config.request_timeout_s,
            )
        except asyncio.TimeoutError:
            raise StoreTimeoutError(f"DynamoDB {operation} timed out")
        except EndpointConnectionError as e:
            raise StoreConnectionError(f"DynamoDB endpoint unreachable: {e}") from e

    @staticmethod
    def _translate(operation: str, error: ClientError) -> Exception:
        error_code = error.response.get("Error", {}).get("Code", "")
        if error_code in THROTTLING_ERROR_CODES:
            return StoreTimeoutError(f"DynamoDB {operation} throttled: {error_code}")
        return UnexpectedStoreError(f"DynamoDB {operation} failed: {error}")

    def build_update_request(
        self,
        directive: WriteDirective,
        condition: Optional[WriteCondition] = None,
    ) -> Dict[str, Any]:
        """Render an UpdateItem request (exposed for inspection in tests)."""
        builder = ExpressionBuilder()
        request: Dict[str, Any] = {
            "TableName": self.table_name,
            "Key": serialize_item(directive.key.as_key()),
            "UpdateExpression": builder.update_expression(directive),
            "ReturnConsumedCapacity": "INDEXES",
            "ReturnItemCollectionMetrics": "SIZE",
            "ReturnValues": "ALL_NEW",
        }
        condition_expression = builder.condition_expression(condition)
        if condition_expression:
            request["ConditionExpression"] = condition_expression
        return builder.apply(request)

    def build_query_request(
        self,
        condition: KeyCondition,
        *,
        limit: Optional[int] = None,
        reverse: bool = False,
        start_key: Optional[Dict[str, Any]] = None,
        consistent: bool = False,
    ) -> Dict[str, Any]:
        """Render a Query request (exposed for inspection in tests)."""
        builder = ExpressionBuilder()
        request: Dict[str, Any] = {
            "TableName": self.table_name,
            "KeyConditionExpression": builder.key_condition_expression(condition),
            "ScanIndexForward": not reverse,
            "ConsistentRead": consistent,
            "ReturnConsumedCapacity": "INDEXES",
        }
        if condition.index_name:
            request["IndexName"] = condition.index_name
        if limit is not None:
            request["Limit"] = limit
        if start_key:
            request["ExclusiveStartKey"] = start_key
        return builder.apply(request)

    async def update_item(
        self,
        directive: WriteDirective,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        request = self.build_update_request(directive, condition)
        try:
            response = await self._call("update_item", request)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.debug(
                    "Conditional update failed",
                    extra={"table": self.table_name, "pk": directive.key.partition},
                )
                return WriteResult(status=WriteStatus.CONDITION_FAILED)
            raise self._translate("UpdateItem", e) from e

        attributes = response.get("Attributes")
        return WriteResult(
            status=WriteStatus.OK,
            attributes=deserialize_item(attributes) if attributes else None,
            capacity=response.get("ConsumedCapacity") or {},
            metrics=response.get("ItemCollectionMetrics"),
        )

    async def get_item(self, key: PrimaryKey, consistent: bool = False) -> ReadResult:
        request = {
            "TableName": self.table_name,
            "Key": serialize_item(key.as_key()),
            "ConsistentRead": consistent,
            "ReturnConsumedCapacity": "INDEXES",
        }
        try:
            response = await self._call("get_item", request)
        except ClientError as e:
            raise self._translate("GetItem", e) from e

        item = response.get("Item")
        return ReadResult(
            item=deserialize_item(item) if item else None,
            capacity=response.get("ConsumedCapacity") or {},
        )

    async def delete_item(
        self,
        key: PrimaryKey,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        builder = ExpressionBuilder()
        request: Dict[str, Any] = {
            "TableName": self.table_name,
            "Key": serialize_item(key.as_key()),
            "ReturnConsumedCapacity": "INDEXES",
            "ReturnItemCollectionMetrics": "SIZE",
            "ReturnValues": "NONE",
        }
        condition_expression = builder.condition_expression(condition)
        if condition_expression:
            request["ConditionExpression"] = condition_expression
        builder.apply(request)

        try:
            response = await self._call("delete_item", request)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return WriteResult(status=WriteStatus.CONDITION_FAILED)
            raise self._translate("DeleteItem", e) from e

        return WriteResult(
            status=WriteStatus.OK,
            capacity=response.get("ConsumedCapacity") or {},
            metrics=response.get("ItemCollectionMetrics"),
        )

    async def query(
        self,
        condition: KeyCondition,
        *,
        limit: Optional[int] = None,
        reverse: bool = False,
        start_key: Optional[Dict[str, Any]] = None,
        consistent: bool = False,
    ) -> QueryPage:
        request = self.build_query_request(
            condition,
            limit=limit,
            reverse=reverse,
            start_key=start_key,
            consistent=consistent,
        )
        try:
            response = await self._call("query", request)
        except ClientError as e:
            raise self._translate("Query", e) from e

        return QueryPage(
            items=[deserialize_item(item) for item in response.get("Items", [])],
            last_key=response.get("LastEvaluatedKey"),
            capacity=response.get("ConsumedCapacity") or {},
        )
