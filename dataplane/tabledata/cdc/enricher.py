"""
Enricher: keep a target entity in sync with a source entity's changes.

For every change event of the source type:

    target = read(target_key(source))
        found     -> update(source, target) -> store.update, or no-op on None
        NotFound  -> create(source)         -> store.create, or no-op on None

The whole read-decide-write sequence runs under the retry wrapper, so a
racing enricher invocation that wins the create or bumps the version makes
this one re-read and decide again.

Policy functions must be deterministic in the source; that is what makes
redelivery of the same event converge instead of corrupting the target.

Invariants:
    - The source is decoded with its type tag checked
    - An event without a new image is a DataIntegrityError, never retried
    - At most one create per target key succeeds
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..codec.items import Item, unmarshall
from ..errors import DataIntegrityError, NotFoundError
from ..store.entity_store import EntityStore, Result
from ..telemetry import ProcessContext, Telemetry
from .bus import BusEvent
from .records import ChangeRecord
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

TargetKey = Callable[[Item], Mapping[str, Any]]
CreatePolicy = Callable[[Item], Awaitable[Optional[Mapping[str, Any]]]]
UpdatePolicy = Callable[[Item, Item], Awaitable[Optional[Mapping[str, Any]]]]


def event_envelope(event: Union[BusEvent, Mapping[str, Any]]) -> Mapping[str, Any]:
    """Accept either a BusEvent or its delivered dict form."""
    if isinstance(event, BusEvent):
        return event.to_dict()
    return event


def event_span_name(envelope: Mapping[str, Any]) -> str:
    resources = envelope.get("resources") or []
    origin = resources[0] if resources else envelope.get("source", "event")
    return f"{origin} process"


class Enricher:
    """Projects one source entity type onto one target entity type.

    Example:
        >>> async def create(account):
        ...     return {"accountId": account["accountId"], "plan": account["plan"]}
        >>> async def update(account, summary):
        ...     if summary["plan"] == account["plan"]:
        ...         return None
        ...     return {**summary.to_dict(), "plan": account["plan"]}
        >>> enricher = Enricher(
        ...     store, "Account", "AccountSummary",
        ...     target_key=lambda a: {"accountId": a["accountId"]},
        ...     create=create, update=update, telemetry=telemetry,
        ... )
        >>> await enricher.handle(event, context)
    """

    def __init__(
        self,
        store: EntityStore,
        source_type: str,
        target_type: str,
        target_key: TargetKey,
        create: CreatePolicy,
        update: UpdatePolicy,
        telemetry: Telemetry,
        retry_policy: Optional[RetryPolicy] = None,
        process_context: Optional[ProcessContext] = None,
    ) -> None:
        self.store = store
        self.source_type = source_type
        self.target_type = target_type
        self.target_key = target_key
        self.create = create
        self.update = update
        self.telemetry = telemetry
        self.retry_policy = retry_policy or RetryPolicy()
        self.process_context = process_context or ProcessContext()

    async def _project_once(self, source: Item) -> Optional[Result]:
        try:
            current = await self.store.read(self.target_type, self.target_key(source))
        except NotFoundError:
            to_create = await self.create(source)
            if to_create is None:
                logger.debug(
                    "Create policy declined",
                    extra={"source": source.id, "target_type": self.target_type},
                )
                return None
            return await self.store.create(self.target_type, to_create)

        to_update = await self.update(source, current.item)
        if to_update is None:
            logger.debug(
                "Update policy declined",
                extra={"source": source.id, "target": current.item.id},
            )
            return None
        return await self.store.update(self.target_type, to_update)

    async def project(self, source: Item) -> Optional[Result]:
        """Apply the policies for one source item.

        Returns:
            The written target, or None if the policy declined

        Raises:
            AlreadyExistsError / OptimisticLockingError: If contention
                outlasted the retry policy
        """
        return await self.retry_policy.run(lambda: self._project_once(source), self.telemetry)

    def source_from_record(self, record: ChangeRecord) -> Item:
        """Decode the source item from a change record.

        Raises:
            DataIntegrityError: If the record has no new image, or the
                image is not a valid source item
        """
        if record.new_image is None:
            raise DataIntegrityError(
                f"Change record for {self.source_type} has no new image",
                details={"event_id": record.event_id, "event_name": record.kind.value},
            )
        return unmarshall(self.store.registry.require(self.source_type), record.new_image)

    async def handle(
        self,
        event: Union[BusEvent, Mapping[str, Any]],
        context: Any = None,
    ) -> Optional[Result]:
        """Bus-event entry point."""
        envelope = event_envelope(event)

        async def run() -> Optional[Result]:
            record = ChangeRecord.from_dict(envelope.get("detail"))
            return await self.project(self.source_from_record(record))

        return await self.telemetry.capture_async_function(
            event_span_name(envelope), self.process_context.invocation_attributes(context), run
        )
