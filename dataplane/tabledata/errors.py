"""
Error types for tabledata.

This module defines every exception raised by the entity store, the codecs
and the CDC pipeline:
- TableDataError: Base exception
- NotFoundError / AlreadyExistsError / OptimisticLockingError: write outcomes
- DataIntegrityError: a stored record does not match its entity type
- DecodingError: malformed node ids or change-log payloads
- ConfigurationError: broken deployment configuration (never retried)

Invariants:
    - All errors inherit from TableDataError
    - Only AlreadyExistsError and OptimisticLockingError are contention errors
      and therefore eligible for automatic retry
    - Errors include context for debugging in ``details``

How to change safely:
    - New error kinds must decide whether they are contention errors; update
      is_contention_error() if they are
    - Keep messages stable, tests and alerting match on them
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional


def _render_key(primary_key: Mapping[str, Any]) -> str:
    return json.dumps(dict(primary_key), sort_keys=True, default=str, separators=(",", ":"))


class TableDataError(Exception):
    """Base exception for all tabledata errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TABLEDATA_ERROR"
        self.details = details or {}


class NotFoundError(TableDataError):
    """The addressed item does not exist.

    Raised when:
    - read/delete/touch target a key with no item
    - update targets a key with no item (after disambiguation)
    - a node id resolves to nothing
    """

    def __init__(self, type_name: str, primary_key: Mapping[str, Any]) -> None:
        super().__init__(
            f"No {type_name} found with id {_render_key(primary_key)}",
            code="NOT_FOUND",
            details={"type_name": type_name, "primary_key": dict(primary_key)},
        )
        self.type_name = type_name
        self.primary_key = dict(primary_key)


class AlreadyExistsError(TableDataError):
    """create was called for a key that already holds an item."""

    def __init__(self, type_name: str, primary_key: Mapping[str, Any]) -> None:
        super().__init__(
            f"{type_name} with id {_render_key(primary_key)} already exists. "
            f"Please switch to update instead of create.",
            code="ALREADY_EXISTS",
            details={"type_name": type_name, "primary_key": dict(primary_key)},
        )
        self.type_name = type_name
        self.primary_key = dict(primary_key)


class OptimisticLockingError(TableDataError):
    """The caller's version is stale. Re-read the item and try again."""

    def __init__(self, type_name: str, primary_key: Mapping[str, Any]) -> None:
        super().__init__(
            f"{type_name} with id {_render_key(primary_key)} is out of date. "
            f"Please refresh and try again.",
            code="OPTIMISTIC_LOCKING",
            details={"type_name": type_name, "primary_key": dict(primary_key)},
        )
        self.type_name = type_name
        self.primary_key = dict(primary_key)


class DataIntegrityError(TableDataError):
    """A stored record is missing required data or has the wrong type tag.

    Never retried: it indicates corruption or a schema mismatch.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="DATA_INTEGRITY", details=details)


class DecodingError(TableDataError):
    """An opaque identifier or payload could not be decoded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="DECODING_ERROR", details=details)


class MalformedChangeRecordError(DecodingError, DataIntegrityError):
    """A change-log record does not have the expected shape."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        TableDataError.__init__(self, message, code="MALFORMED_CHANGE_RECORD", details=details)


class ConfigurationError(TableDataError):
    """The deployment is misconfigured. Always reported, never retried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class MissingSequenceNumberError(ConfigurationError):
    """A change record arrived without a sequence number.

    The upstream event source mapping did not request partial batch
    responses, so failed records cannot be redelivered individually.
    """

    def __init__(self, event_id: Optional[str] = None) -> None:
        super().__init__(
            "Missing SequenceNumber. Did you forget to enable "
            "ReportBatchItemFailures on the event source mapping?",
            details={"event_id": event_id},
        )
        self.event_id = event_id


class UnknownEntityTypeError(TableDataError):
    """No entity type is registered under the given type tag."""

    def __init__(self, type_name: str) -> None:
        super().__init__(
            f"Unknown entity type '{type_name}'",
            code="UNKNOWN_ENTITY_TYPE",
            details={"type_name": type_name},
        )
        self.type_name = type_name


class UnknownIndexError(TableDataError):
    """The entity type declares no index with the given name."""

    def __init__(self, type_name: str, index_name: str) -> None:
        super().__init__(
            f"{type_name} has no index named '{index_name}'",
            code="UNKNOWN_INDEX",
            details={"type_name": type_name, "index_name": index_name},
        )
        self.type_name = type_name
        self.index_name = index_name


class MissingKeyAttributeError(TableDataError, ValueError):
    """A key could not be derived because an attribute is missing."""

    def __init__(self, type_name: str, field_name: str, key_name: str = "primary key") -> None:
        super().__init__(
            f"Cannot derive {key_name} for {type_name}: '{field_name}' is missing",
            code="MISSING_KEY_ATTRIBUTE",
            details={"type_name": type_name, "field": field_name, "key": key_name},
        )
        self.type_name = type_name
        self.field_name = field_name


def is_contention_error(error: BaseException) -> bool:
    """Whether ``error`` signals transient write contention."""
    return isinstance(error, (AlreadyExistsError, OptimisticLockingError))
