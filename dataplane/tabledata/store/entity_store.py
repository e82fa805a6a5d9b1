"""
Entity store: typed CRUD over the shared table.

This module implements create/read/update/delete/touch/query for every
registered entity type on top of a TableBackend. It owns the optimistic
concurrency protocol:

    create  condition: item absent                 -> ALREADY_EXISTS
    update  condition: exists AND _et AND _v match -> NOT_FOUND | CONFLICT
    delete  condition: exists AND _et matches      -> NOT_FOUND
    touch   condition: exists AND _et matches      -> NOT_FOUND

A failed update condition does not say whether the item is missing or
stale, so the store issues a consistent follow-up read to tell them apart.
If that read fails for any reason other than NotFoundError the outcome is
CONFLICT.

Each mutating operation has a ``try_*`` form returning a WriteOutcome and
a raising form that unwraps it into a typed error.

Invariants:
    - Every item read back is type-tag checked before it is returned
    - No in-process locks; concurrency safety comes from conditional writes
    - Versions only move by +1 per successful update/touch
    - blind_write never reports a version conflict

How to change safely:
    - Keep condition shapes in sync with the table in the module docstring
    - Query pagination tokens are backend keys; never parse them here
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Union

from ..codec.items import (
    TYPE_COLUMN,
    VERSION_COLUMN,
    Item,
    WriteInput,
    check_type_tag,
    marshall_for_blind_write,
    marshall_for_create,
    marshall_for_touch,
    marshall_for_update,
    unmarshall,
)
from ..codec.keys import (
    PrimaryKey,
    decode_node_id,
    derive_primary_key,
    render_key,
    sort_key_prefix,
)
from ..errors import (
    AlreadyExistsError,
    DataIntegrityError,
    NotFoundError,
    OptimisticLockingError,
    UnknownIndexError,
)
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType, IndexKind
from .base import KeyCondition, KeyOperator, TableBackend, WriteCondition, WriteResult

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class OutcomeStatus(Enum):
    """Discriminated outcome of a conditional write."""

    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_EXISTS = "already_exists"


@dataclass
class Result:
    """Single-item result envelope.

    Attributes:
        item: The written or read item (None for deletes)
        capacity: Consumed capacity reported by the backend
        metrics: Item collection metrics reported by the backend
    """

    item: Optional[Item]
    capacity: Dict[str, Any] = field(default_factory=dict)
    metrics: Optional[Dict[str, Any]] = None


@dataclass
class MultiResult:
    """Query result envelope.

    Attributes:
        items: Decoded items of this page
        capacity: Consumed capacity
        has_next_page: Whether another page exists
        next_token: Opaque token for the next page (the backend's last key)
    """

    items: List[Item]
    capacity: Dict[str, Any] = field(default_factory=dict)
    has_next_page: bool = False
    next_token: Optional[Dict[str, Any]] = None


@dataclass
class WriteOutcome:
    """Outcome of a ``try_*`` write.

    Attributes:
        status: OK, NOT_FOUND, CONFLICT or ALREADY_EXISTS
        type_name: Entity type written
        primary_key: Key attributes the caller addressed
        result: The result envelope when status is OK
    """

    status: OutcomeStatus
    type_name: str
    primary_key: Dict[str, Any]
    result: Optional[Result] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    def unwrap(self) -> Result:
        """Return the result or raise the typed error for this outcome.

        Raises:
            NotFoundError: status NOT_FOUND
            OptimisticLockingError: status CONFLICT
            AlreadyExistsError: status ALREADY_EXISTS
            DataIntegrityError: status OK without a result
        """
        if self.status == OutcomeStatus.OK:
            if self.result is None:
                raise DataIntegrityError(
                    "Write succeeded without a result",
                    details={"type_name": self.type_name, "key": self.primary_key},
                )
            return self.result
        if self.status == OutcomeStatus.NOT_FOUND:
            raise NotFoundError(self.type_name, self.primary_key)
        if self.status == OutcomeStatus.CONFLICT:
            raise OptimisticLockingError(self.type_name, self.primary_key)
        raise AlreadyExistsError(self.type_name, self.primary_key)


def _as_mapping(data: Union[Mapping[str, Any], Item]) -> Mapping[str, Any]:
    if isinstance(data, Item):
        return data.to_dict()
    return data


class EntityStore:
    """Typed access to every entity type registered in one table.

    Attributes:
        backend: TableBackend holding the items
        registry: EntityRegistry resolving type tags

    Example:
        >>> store = EntityStore(InMemoryTable(), registry)
        >>> await store.connect()
        >>> created = await store.create(
        ...     "UserLogin", {"externalId": "8943", "login": "alice", "vendor": "GITHUB"}
        ... )
        >>> created.item.version
        1
    """

    def __init__(
        self,
        backend: TableBackend,
        registry: EntityRegistry,
        clock: Optional[Callable[[], int]] = None,
        consistent_reads: bool = False,
    ) -> None:
        """Initialize the store.

        Args:
            backend: Table backend
            registry: Registry of entity types stored in the table
            clock: Returns the current time in Unix ms (defaults to wall clock)
            consistent_reads: Default read consistency for every type
        """
        self.backend = backend
        self.registry = registry
        self._clock = clock or _now_ms
        self._consistent_reads = consistent_reads

    async def connect(self) -> None:
        await self.backend.connect()

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self) -> EntityStore:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Helpers

    def _consistent(self, entity_type: EntityType, consistent: Optional[bool]) -> bool:
        if consistent is not None:
            return consistent
        return entity_type.consistent_reads or self._consistent_reads

    @staticmethod
    def _key_attributes(entity_type: EntityType, data: Mapping[str, Any]) -> Dict[str, Any]:
        return {name: data.get(name) for name in entity_type.key_fields}

    @staticmethod
    def _type_guard(entity_type: EntityType, exists: bool = True) -> WriteCondition:
        return WriteCondition(exists=exists, equals={TYPE_COLUMN: entity_type.name})

    def _decode_written(self, entity_type: EntityType, written: WriteResult) -> Result:
        if not written.attributes:
            raise DataIntegrityError(
                f"Expected the table to return the written {entity_type.name}",
                details={"type_name": entity_type.name},
            )
        if written.attributes.get(TYPE_COLUMN) != entity_type.name:
            raise DataIntegrityError(
                f"Expected to write {entity_type.name} but wrote "
                f"{written.attributes.get(TYPE_COLUMN)} instead",
                details={"type_name": entity_type.name},
            )
        return Result(
            item=unmarshall(entity_type, written.attributes),
            capacity=written.capacity,
            metrics=written.metrics,
        )

    # Create

    async def try_create(self, type_name: str, data: WriteInput) -> WriteOutcome:
        """Create an item unless its key is already taken.

        Returns:
            WriteOutcome with status OK (full new item) or ALREADY_EXISTS
        """
        entity_type = self.registry.require(type_name)
        data = _as_mapping(data)
        key_attrs = self._key_attributes(entity_type, data)
        directive = marshall_for_create(entity_type, data, self._clock())

        written = await self.backend.update_item(directive, WriteCondition(exists=False))
        if not written.ok:
            logger.debug(
                "Create rejected, item exists",
                extra={"type_name": type_name, "pk": directive.key.partition},
            )
            return WriteOutcome(OutcomeStatus.ALREADY_EXISTS, type_name, key_attrs)

        logger.debug("Created item", extra={"type_name": type_name, "pk": directive.key.partition})
        return WriteOutcome(
            OutcomeStatus.OK, type_name, key_attrs, self._decode_written(entity_type, written)
        )

    async def create(self, type_name: str, data: WriteInput) -> Result:
        """Create an item.

        Raises:
            AlreadyExistsError: If an item with the same key exists
        """
        return (await self.try_create(type_name, data)).unwrap()

    # Read

    async def _read_key(
        self,
        entity_type: EntityType,
        key: PrimaryKey,
        addressed: Dict[str, Any],
        consistent: Optional[bool],
    ) -> Result:
        found = await self.backend.get_item(key, consistent=self._consistent(entity_type, consistent))
        if found.item is None:
            raise NotFoundError(entity_type.name, addressed)
        return Result(item=unmarshall(entity_type, found.item), capacity=found.capacity)

    async def read(
        self,
        type_name: str,
        key_attrs: Union[Mapping[str, Any], Item],
        consistent: Optional[bool] = None,
    ) -> Result:
        """Read one item by its key attributes.

        Raises:
            NotFoundError: If no item exists at the derived key
            DataIntegrityError: If the stored record is not a ``type_name``
        """
        entity_type = self.registry.require(type_name)
        key_attrs = _as_mapping(key_attrs)
        key = derive_primary_key(entity_type, key_attrs)
        return await self._read_key(
            entity_type, key, self._key_attributes(entity_type, key_attrs), consistent
        )

    async def read_by_node_id(self, node_id: str, consistent: Optional[bool] = None) -> Result:
        """Read any registered entity by its opaque node id.

        Raises:
            DecodingError: If the node id is malformed
            UnknownEntityTypeError: If the encoded type is not registered
            NotFoundError: If the item does not exist
        """
        type_name, key = decode_node_id(node_id)
        entity_type = self.registry.require(type_name)
        return await self._read_key(entity_type, key, {"id": node_id}, consistent)

    # Update

    async def try_update(self, type_name: str, data: WriteInput) -> WriteOutcome:
        """Update an item, guarded by its type tag and current version.

        ``data`` carries the full domain attributes plus the ``version``
        the caller last read.

        Returns:
            WriteOutcome with status OK, NOT_FOUND or CONFLICT
        """
        entity_type = self.registry.require(type_name)
        data = _as_mapping(data)
        key_attrs = self._key_attributes(entity_type, data)
        directive = marshall_for_update(entity_type, data, self._clock())

        equals: Dict[str, Any] = {TYPE_COLUMN: entity_type.name}
        if entity_type.versioned:
            equals[VERSION_COLUMN] = int(data["version"])
        written = await self.backend.update_item(directive, WriteCondition(exists=True, equals=equals))
        if written.ok:
            logger.debug(
                "Updated item",
                extra={"type_name": type_name, "pk": directive.key.partition},
            )
            return WriteOutcome(
                OutcomeStatus.OK, type_name, key_attrs, self._decode_written(entity_type, written)
            )

        status = await self._disambiguate(entity_type, data)
        logger.debug(
            "Update rejected",
            extra={"type_name": type_name, "pk": directive.key.partition, "status": status.value},
        )
        return WriteOutcome(status, type_name, key_attrs)

    async def _disambiguate(self, entity_type: EntityType, data: Mapping[str, Any]) -> OutcomeStatus:
        try:
            await self.read(entity_type.name, data, consistent=True)
        except NotFoundError:
            return OutcomeStatus.NOT_FOUND
        except Exception as e:
            logger.warning(
                "Follow-up read after failed update failed; reporting conflict",
                extra={"type_name": entity_type.name, "error": str(e)},
            )
            return OutcomeStatus.CONFLICT
        return OutcomeStatus.CONFLICT

    async def update(self, type_name: str, data: WriteInput) -> Result:
        """Update an item.

        Raises:
            NotFoundError: If the item does not exist
            OptimisticLockingError: If the supplied version is stale
        """
        return (await self.try_update(type_name, data)).unwrap()

    # Delete

    async def try_delete(
        self,
        type_name: str,
        key_attrs: Union[Mapping[str, Any], Item],
    ) -> WriteOutcome:
        entity_type = self.registry.require(type_name)
        key_attrs = _as_mapping(key_attrs)
        addressed = self._key_attributes(entity_type, key_attrs)
        key = derive_primary_key(entity_type, key_attrs)

        written = await self.backend.delete_item(key, self._type_guard(entity_type))
        if not written.ok:
            return WriteOutcome(OutcomeStatus.NOT_FOUND, type_name, addressed)

        logger.debug("Deleted item", extra={"type_name": type_name, "pk": key.partition})
        return WriteOutcome(
            OutcomeStatus.OK,
            type_name,
            addressed,
            Result(item=None, capacity=written.capacity, metrics=written.metrics),
        )

    async def delete(self, type_name: str, key_attrs: Union[Mapping[str, Any], Item]) -> Result:
        """Delete an item.

        Raises:
            NotFoundError: If the item does not exist
        """
        return (await self.try_delete(type_name, key_attrs)).unwrap()

    # Touch

    async def try_touch(
        self,
        type_name: str,
        key_attrs: Union[Mapping[str, Any], Item],
    ) -> WriteOutcome:
        entity_type = self.registry.require(type_name)
        key_attrs = _as_mapping(key_attrs)
        addressed = self._key_attributes(entity_type, key_attrs)
        key = derive_primary_key(entity_type, key_attrs)
        directive = marshall_for_touch(entity_type, key, self._clock())

        written = await self.backend.update_item(directive, self._type_guard(entity_type))
        if not written.ok:
            return WriteOutcome(OutcomeStatus.NOT_FOUND, type_name, addressed)
        return WriteOutcome(
            OutcomeStatus.OK, type_name, addressed, self._decode_written(entity_type, written)
        )

    async def touch(self, type_name: str, key_attrs: Union[Mapping[str, Any], Item]) -> Result:
        """Bump the version (and extend the expiry) without changing the payload.

        Raises:
            NotFoundError: If the item does not exist
        """
        return (await self.try_touch(type_name, key_attrs)).unwrap()

    # Blind write

    async def blind_write(self, type_name: str, data: WriteInput) -> Result:
        """Unconditionally upsert an item.

        createdAt is kept if the item exists; the version is incremented
        from whatever is stored.
        """
        entity_type = self.registry.require(type_name)
        directive = marshall_for_blind_write(entity_type, _as_mapping(data), self._clock())
        written = await self.backend.update_item(directive)
        logger.debug("Blind write", extra={"type_name": type_name, "pk": directive.key.partition})
        return self._decode_written(entity_type, written)

    # Query

    def build_key_condition(
        self,
        entity_type: EntityType,
        attrs: Mapping[str, Any],
        index: Optional[str] = None,
        operator: Union[str, KeyOperator] = KeyOperator.BEGINS_WITH,
    ) -> KeyCondition:
        """Build the key condition for a query.

        The partition key must be fully derivable from ``attrs``. With
        ``begins_with`` the sort condition is the longest prefix ``attrs``
        allow; other operators need every sort key field.

        Raises:
            UnknownIndexError: If ``index`` is not declared on the type
            MissingKeyAttributeError: If a required key attribute is missing
        """
        if isinstance(operator, str):
            operator = KeyOperator.from_str(operator)

        if index is None:
            partition = render_key(entity_type, entity_type.partition_key, attrs)
            partition_attr = "pk"
            sort_template = entity_type.sort_key
            sort_attr = "sk" if sort_template is not None else None
        else:
            index_def = entity_type.get_index(index)
            if index_def is None:
                raise UnknownIndexError(entity_type.name, index)
            template = index_def.partition or entity_type.partition_key
            partition = render_key(entity_type, template, attrs, key_name=f"index {index}")
            partition_attr = index_def.partition_attribute
            sort_template = index_def.sort
            sort_attr = index_def.sort_attribute

        sort_value = None
        if sort_template is not None:
            if operator == KeyOperator.BEGINS_WITH:
                sort_value = sort_key_prefix(sort_template, attrs) or None
            else:
                sort_value = render_key(
                    entity_type, sort_template, attrs, key_name=f"sort key of {index or 'table'}"
                )

        return KeyCondition(
            partition_attr=partition_attr,
            partition_value=partition,
            sort_attr=sort_attr,
            sort_value=sort_value,
            operator=operator,
            index_name=index,
        )

    async def query(
        self,
        type_name: str,
        attrs: Mapping[str, Any],
        index: Optional[str] = None,
        operator: Union[str, KeyOperator] = KeyOperator.BEGINS_WITH,
        limit: Optional[int] = None,
        reverse: bool = False,
        next_token: Optional[Dict[str, Any]] = None,
        consistent: Optional[bool] = None,
    ) -> MultiResult:
        """Query items of one type by (partial) key.

        Args:
            type_name: Entity type to query
            attrs: Key attributes; partition fields are required, sort
                fields narrow the result
            index: Secondary index name (None for the table)
            operator: Sort key operator
            limit: Maximum items per page
            reverse: Descending sort key order
            next_token: Token from a previous page
            consistent: Read consistency (ignored for GSIs)

        Returns:
            MultiResult with this page's items

        Raises:
            DataIntegrityError: If any returned record is not a ``type_name``
        """
        entity_type = self.registry.require(type_name)
        condition = self.build_key_condition(entity_type, attrs, index, operator)

        use_consistent = self._consistent(entity_type, consistent)
        if index is not None:
            index_def = entity_type.get_index(index)
            if index_def is not None and index_def.kind == IndexKind.GSI:
                use_consistent = False

        page = await self.backend.query(
            condition,
            limit=limit,
            reverse=reverse,
            start_key=next_token,
            consistent=use_consistent,
        )

        items = []
        for raw in page.items:
            check_type_tag(entity_type, raw)
            items.append(unmarshall(entity_type, raw))

        return MultiResult(
            items=items,
            capacity=page.capacity,
            has_next_page=page.last_key is not None,
            next_token=page.last_key,
        )

    async def query_all(
        self,
        type_name: str,
        attrs: Mapping[str, Any],
        index: Optional[str] = None,
        operator: Union[str, KeyOperator] = KeyOperator.BEGINS_WITH,
        page_size: Optional[int] = None,
        reverse: bool = False,
        consistent: Optional[bool] = None,
    ) -> AsyncIterator[Item]:
        """Iterate over every matching item, following pagination."""
        token: Optional[Dict[str, Any]] = None
        while True:
            page = await self.query(
                type_name,
                attrs,
                index=index,
                operator=operator,
                limit=page_size,
                reverse=reverse,
                next_token=token,
                consistent=consistent,
            )
            for item in page.items:
                yield item
            if not page.has_next_page:
                return
            token = page.next_token
