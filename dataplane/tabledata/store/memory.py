"""
In-memory table backend for testing.

This module provides a single-table backend that keeps items in a dict,
for:
- Unit and integration tests
- Local development without DynamoDB

Invariants:
    - All data is lost on process exit
    - Conditional writes are atomic (one asyncio lock around check + apply)
    - Condition, increment and if_not_exists semantics match DynamoDB
    - Returned items are deep copies; callers cannot mutate stored state

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour aligned with DynamoDBTable; the entity store tests
      rely on it
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..codec.items import WriteDirective
from ..codec.keys import PrimaryKey
from .base import (
    KeyCondition,
    KeyOperator,
    QueryPage,
    ReadResult,
    StoreConnectionError,
    UnexpectedStoreError,
    WriteCondition,
    WriteResult,
    WriteStatus,
)

logger = logging.getLogger(__name__)

_StorageKey = Tuple[str, Optional[str]]


def _matches(operator: KeyOperator, value: Any, operand: Any) -> bool:
    if operator == KeyOperator.BEGINS_WITH:
        return isinstance(value, str) and value.startswith(operand)
    if operator == KeyOperator.EQ:
        return value == operand
    if operator == KeyOperator.LT:
        return value < operand
    if operator == KeyOperator.LE:
        return value <= operand
    if operator == KeyOperator.GT:
        return value > operand
    if operator == KeyOperator.GE:
        return value >= operand
    raise ValueError(f"Unsupported operator {operator}")


class InMemoryTable:
    """In-memory implementation of the TableBackend protocol.

    Example:
        >>> table = InMemoryTable()
        >>> await table.connect()
        >>> store = EntityStore(table, registry)
    """

    def __init__(self, table_name: str = "in-memory") -> None:
        self.table_name = table_name
        self._items: Dict[_StorageKey, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self._read_failures: List[Exception] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryTable connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryTable closed")

    def _capacity(self, units: float = 1.0) -> Dict[str, Any]:
        return {"TableName": self.table_name, "CapacityUnits": units}

    def _require_connected(self) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected")

    @staticmethod
    def _storage_key(key: PrimaryKey) -> _StorageKey:
        return (key.partition, key.sort)

    @staticmethod
    def _condition_holds(current: Optional[Dict[str, Any]], condition: Optional[WriteCondition]) -> bool:
        if condition is None:
            return True
        if condition.exists is True and current is None:
            return False
        if condition.exists is False and current is not None:
            return False
        for column, value in condition.equals.items():
            if current is None or current.get(column) != value:
                return False
        return True

    async def update_item(
        self,
        directive: WriteDirective,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        self._require_connected()
        storage_key = self._storage_key(directive.key)

        async with self._lock:
            current = self._items.get(storage_key)
            if not self._condition_holds(current, condition):
                return WriteResult(status=WriteStatus.CONDITION_FAILED, capacity=self._capacity())

            item = copy.deepcopy(current) if current is not None else {}
            item.update(directive.key.as_key())
            for column, value in directive.assignments.items():
                item[column] = copy.deepcopy(value)
            for column, value in directive.assign_if_absent.items():
                if item.get(column) is None:
                    item[column] = copy.deepcopy(value)
            for column, inc in directive.increments.items():
                base = item.get(column)
                if base is None:
                    if inc.start is None:
                        raise UnexpectedStoreError(
                            f"The provided expression refers to an attribute that does not exist: {column}"
                        )
                    base = inc.start
                item[column] = base + inc.amount
            for column in directive.removals:
                item.pop(column, None)

            self._items[storage_key] = item
            return WriteResult(
                status=WriteStatus.OK,
                attributes=copy.deepcopy(item),
                capacity=self._capacity(),
                metrics={"ItemCollectionKey": {"pk": directive.key.partition}},
            )

    async def get_item(self, key: PrimaryKey, consistent: bool = False) -> ReadResult:
        self._require_connected()
        if self._read_failures:
            raise self._read_failures.pop(0)
        item = self._items.get(self._storage_key(key))
        return ReadResult(
            item=copy.deepcopy(item) if item is not None else None,
            capacity=self._capacity(1.0 if consistent else 0.5),
        )

    async def delete_item(
        self,
        key: PrimaryKey,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        self._require_connected()
        storage_key = self._storage_key(key)
        async with self._lock:
            current = self._items.get(storage_key)
            if not self._condition_holds(current, condition):
                return WriteResult(status=WriteStatus.CONDITION_FAILED, capacity=self._capacity())
            self._items.pop(storage_key, None)
        return WriteResult(status=WriteStatus.OK, capacity=self._capacity())

    async def query(
        self,
        condition: KeyCondition,
        *,
        limit: Optional[int] = None,
        reverse: bool = False,
        start_key: Optional[Dict[str, Any]] = None,
        consistent: bool = False,
    ) -> QueryPage:
        self._require_connected()
        sort_attr = condition.sort_attr or "sk"

        matched = []
        for item in self._items.values():
            if item.get(condition.partition_attr) != condition.partition_value:
                continue
            if condition.has_sort_condition:
                if sort_attr not in item:
                    continue
                if not _matches(condition.operator, item[sort_attr], condition.sort_value):
                    continue
            elif condition.sort_attr is not None and condition.sort_attr not in item:
                # sparse index
                continue
            matched.append(item)

        matched.sort(key=lambda i: (str(i.get(sort_attr, "")), str(i.get("sk", ""))), reverse=reverse)

        if start_key:
            resume_at = (start_key.get("pk"), start_key.get("sk"))
            for position, item in enumerate(matched):
                if (item.get("pk"), item.get("sk")) == resume_at:
                    matched = matched[position + 1:]
                    break
            else:
                matched = []

        last_key = None
        if limit is not None and len(matched) > limit:
            matched = matched[:limit]
            last = matched[-1]
            last_key = {"pk": last["pk"]}
            if "sk" in last:
                last_key["sk"] = last["sk"]
            if condition.partition_attr != "pk":
                last_key[condition.partition_attr] = last[condition.partition_attr]
            if condition.sort_attr and condition.sort_attr in last:
                last_key[condition.sort_attr] = last[condition.sort_attr]

        return QueryPage(
            items=[copy.deepcopy(i) for i in matched],
            last_key=last_key,
            capacity=self._capacity(0.5 * max(1, len(matched))),
        )

    # Testing helpers

    def put_raw(self, item: Dict[str, Any]) -> None:
        """Store a raw record, bypassing the codec (testing helper)."""
        self._items[(item["pk"], item.get("sk"))] = copy.deepcopy(item)

    def get_raw(self, key: PrimaryKey) -> Optional[Dict[str, Any]]:
        """Return a copy of the stored raw record (testing helper)."""
        item = self._items.get(self._storage_key(key))
        return copy.deepcopy(item) if item is not None else None

    def fail_next_read(self, error: Exception) -> None:
        """Make the next get_item raise ``error`` (testing helper)."""
        self._read_failures.append(error)

    def item_count(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        self._items.clear()
        self._read_failures.clear()
