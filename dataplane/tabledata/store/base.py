"""
Base protocol and types for table backends.

This module defines the TableBackend protocol that all storage backends
must implement, along with the condition, result and error types shared by
them.

Invariants:
    - A conditional write either applies completely or not at all
    - A failed condition is reported as WriteStatus.CONDITION_FAILED, never
      raised; exceptions are reserved for transport failures
    - Query pagination keys are opaque and only ever passed back verbatim

How to change safely:
    - Protocol changes require updating DynamoDBTable and InMemoryTable
    - Keep condition semantics identical across backends; the entity store
      tests run against the in-memory backend only
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..codec.items import WriteDirective
from ..codec.keys import PrimaryKey

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for table backend operations."""
    pass


class StoreConnectionError(StoreError):
    """Connection to the table backend failed."""
    pass


class StoreTimeoutError(StoreError):
    """Table operation timed out or was throttled."""
    pass


class UnexpectedStoreError(StoreError):
    """The backend SDK raised something the store does not understand."""
    pass


class WriteStatus(Enum):
    """Outcome of a conditional write."""

    OK = "ok"
    CONDITION_FAILED = "condition_failed"


class KeyOperator(Enum):
    """Sort key operators supported by key-condition queries."""

    BEGINS_WITH = "begins_with"
    EQ = "="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    @classmethod
    def from_str(cls, value: str) -> KeyOperator:
        for op in cls:
            if op.value == value:
                return op
        valid = [op.value for op in cls]
        raise ValueError(f"Invalid key operator '{value}'. Valid operators: {valid}")


@dataclass(frozen=True)
class WriteCondition:
    """Guard evaluated atomically with a write.

    Attributes:
        exists: True requires the item to exist, False requires it to be
            absent, None skips the existence check
        equals: column -> value that must match the stored item
    """

    exists: Optional[bool] = None
    equals: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.exists is None and not self.equals


@dataclass(frozen=True)
class KeyCondition:
    """Key-condition for a query against the table or one of its indexes.

    Attributes:
        partition_attr: Partition key column (``pk`` or ``{index}pk``)
        partition_value: Exact partition key
        sort_attr: Sort key column, if a sort condition applies
        sort_value: Sort key operand
        operator: How sort_value is compared
        index_name: Secondary index to query (None for the table)
    """

    partition_attr: str
    partition_value: str
    sort_attr: Optional[str] = None
    sort_value: Optional[str] = None
    operator: KeyOperator = KeyOperator.BEGINS_WITH
    index_name: Optional[str] = None

    @property
    def has_sort_condition(self) -> bool:
        return self.sort_attr is not None and self.sort_value is not None


@dataclass
class WriteResult:
    """Result of update_item / delete_item.

    Attributes:
        status: OK or CONDITION_FAILED
        attributes: Item after the write (ALL_NEW), None for deletes and
            failed conditions
        capacity: Consumed capacity as reported by the backend
        metrics: Item collection metrics as reported by the backend
    """

    status: WriteStatus
    attributes: Optional[Dict[str, Any]] = None
    capacity: Dict[str, Any] = field(default_factory=dict)
    metrics: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == WriteStatus.OK


@dataclass
class ReadResult:
    """Result of get_item."""

    item: Optional[Dict[str, Any]]
    capacity: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryPage:
    """One page of query results.

    Attributes:
        items: Raw items in key order
        last_key: Opaque continuation key, None on the last page
        capacity: Consumed capacity
    """

    items: List[Dict[str, Any]]
    last_key: Optional[Dict[str, Any]] = None
    capacity: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class TableBackend(Protocol):
    """Protocol for single-table storage backends.

    The entity store relies on exactly these primitives:
    - conditional update returning the new item
    - get by primary key
    - conditional delete
    - key-condition query with an opaque continuation key

    Example:
        >>> table = DynamoDBTable(TableConfig(table_name="entities"))
        >>> await table.connect()
        >>> result = await table.get_item(PrimaryKey("USER#GITHUB#8943", "LOGIN#alice"))
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def update_item(
        self,
        directive: WriteDirective,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        """Apply a write directive, optionally guarded by a condition.

        Returns:
            WriteResult with the full new item on success

        Raises:
            StoreError: For transport failures (not for failed conditions)
        """
        ...

    @abstractmethod
    async def get_item(self, key: PrimaryKey, consistent: bool = False) -> ReadResult:
        """Read one item by primary key."""
        ...

    @abstractmethod
    async def delete_item(
        self,
        key: PrimaryKey,
        condition: Optional[WriteCondition] = None,
    ) -> WriteResult:
        """Delete one item, optionally guarded by a condition."""
        ...

    @abstractmethod
    async def query(
        self,
        condition: KeyCondition,
        *,
        limit: Optional[int] = None,
        reverse: bool = False,
        start_key: Optional[Dict[str, Any]] = None,
        consistent: bool = False,
    ) -> QueryPage:
        """Run a key-condition query and return one page."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...
