"""
Storage layer for tabledata.

- base: TableBackend protocol, conditions and results
- dynamodb: aiobotocore DynamoDB backend
- memory: in-memory backend for tests and local development
- entity_store: typed CRUD and optimistic concurrency over a backend
"""

from .base import (
    KeyCondition,
    KeyOperator,
    QueryPage,
    ReadResult,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
    TableBackend,
    UnexpectedStoreError,
    WriteCondition,
    WriteResult,
    WriteStatus,
)
from .dynamodb import DynamoDBTable
from .entity_store import EntityStore, MultiResult, OutcomeStatus, Result, WriteOutcome
from .memory import InMemoryTable

__all__ = [
    # Protocol
    "TableBackend",
    "KeyCondition",
    "KeyOperator",
    "WriteCondition",
    "WriteResult",
    "WriteStatus",
    "ReadResult",
    "QueryPage",
    # Errors
    "StoreError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "UnexpectedStoreError",
    # Implementations
    "DynamoDBTable",
    "InMemoryTable",
    # Entity store
    "EntityStore",
    "Result",
    "MultiResult",
    "WriteOutcome",
    "OutcomeStatus",
]
