"""
AWS EventBridge bus implementation.

Publishes one PutEvents entry per change record using aiobotocore.

Invariants:
    - One entry per PutEvents call, so a failure maps to exactly one record
    - A non-zero FailedEntryCount raises PublishError
    - Throttling raises BusTimeoutError; other SDK errors raise BusError

How to change safely:
    - Test with LocalStack before deploying to AWS
    - Entries are limited to 256 KB; large images need a claim-check first
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from aiobotocore.session import get_session
from botocore.exceptions import ClientError, EndpointConnectionError

from .base import BusConnectionError, BusError, BusEvent, BusTimeoutError, PublishError

logger = logging.getLogger(__name__)


class EventBridgeBus:
    """EventBridge implementation of the EventBus protocol.

    Attributes:
        config: EventBridgeConfig instance

    Example:
        >>> bus = EventBridgeBus(EventBridgeConfig(bus_name="default", region="us-east-1"))
        >>> await bus.connect()
        >>> await bus.publish(event)
    """

    def __init__(self, config: Any, publish_timeout_s: float = 30.0) -> None:
        self.config = config
        self.publish_timeout_s = publish_timeout_s
        self._session = None
        self._client = None
        self._client_ctx = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the EventBridge client.

        Raises:
            BusConnectionError: If the client cannot be created
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

            self._client_ctx = self._session.create_client("events", **client_config)
            self._client = await self._client_ctx.__aenter__()

            self._connected = True
            logger.info(
                "Connected to EventBridge",
                extra={
                    "bus": self.config.bus_name,
                    "region": self.config.region,
                    "endpoint": self.config.endpoint_url or "AWS",
                },
            )

        except EndpointConnectionError as e:
            raise BusConnectionError(f"Failed to connect to EventBridge endpoint: {e}") from e
        except ClientError as e:
            raise BusConnectionError(f"EventBridge error: {e}") from e

    async def close(self) -> None:
        """Close the EventBridge client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing EventBridge client: {e}")

        self._client = None
        self._client_ctx = None
        self._session = None
        self._connected = False
        logger.info("EventBridge connection closed")

    async def publish(self, event: BusEvent) -> Optional[str]:
        """Publish one event with PutEvents.

        Raises:
            BusConnectionError: If not connected
            BusTimeoutError: If the call timed out or was throttled
            PublishError: If EventBridge rejected the entry
            BusError: For other EventBridge errors
        """
        if not self._client:
            raise BusConnectionError("Not connected to EventBridge")

        try:
            response = await asyncio.wait_for(
                self._client.put_events(Entries=[event.to_entry(self.config.bus_name)]),
                timeout=self.publish_timeout_s,
            )
        except asyncio.TimeoutError:
            raise BusTimeoutError("EventBridge PutEvents timed out")
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ("ThrottlingException", "LimitExceededException"):
                raise BusTimeoutError(f"EventBridge throttled: {error_code}") from e
            raise BusError(f"EventBridge PutEvents failed: {e}") from e

        entries = response.get("Entries") or [{}]
        if response.get("FailedEntryCount", 0) > 0:
            entry = entries[0]
            raise PublishError(
                f"EventBridge rejected event from {event.source}: "
                f"{entry.get('ErrorCode')} {entry.get('ErrorMessage')}",
                error_code=entry.get("ErrorCode"),
            )

        event_id = entries[0].get("EventId")
        logger.debug(
            "Event published to EventBridge",
            extra={
                "bus": self.config.bus_name,
                "source": event.source,
                "detail_type": event.detail_type,
                "event_id": event_id,
            },
        )
        return event_id
