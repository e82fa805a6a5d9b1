"""
Kafka/Redpanda bus implementation.

Publishes change events to one topic for deployments that consume changes
from Kafka instead of EventBridge. Works with Apache Kafka, Amazon MSK,
Redpanda, or any Kafka API-compatible system.

Message layout:
    key: event source (``{table}.{typeTag}``), so one entity type stays
        ordered within a partition
    value: JSON of BusEvent.to_dict()
    headers: ``detail-type`` and ``source``

Invariants:
    - Producer uses acks=all for strongest durability
    - Idempotent producer prevents duplicate writes on producer retry
    - publish() returns after the broker acknowledged the message

How to change safely:
    - Test with actual Kafka/Redpanda cluster before deploying
    - Changing the key changes partitioning and therefore ordering
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError

from .base import BusConnectionError, BusError, BusEvent, BusTimeoutError

logger = logging.getLogger(__name__)


class KafkaEventBus:
    """Kafka implementation of the EventBus protocol.

    Attributes:
        config: KafkaConfig instance

    Example:
        >>> bus = KafkaEventBus(KafkaConfig(brokers="localhost:9092"))
        >>> await bus.connect()
        >>> await bus.publish(event)
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            BusConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            producer_config = {
                "bootstrap_servers": self.config.brokers,
                "acks": self.config.acks,
                "enable_idempotence": self.config.enable_idempotence,
                "linger_ms": 5,
                "request_timeout_ms": self.config.request_timeout_ms,
                "retry_backoff_ms": 100,
            }

            if self.config.security_protocol != "PLAINTEXT":
                producer_config["security_protocol"] = self.config.security_protocol

            if self.config.sasl_mechanism:
                producer_config["sasl_mechanism"] = self.config.sasl_mechanism
                producer_config["sasl_plain_username"] = self.config.sasl_username
                producer_config["sasl_plain_password"] = self.config.sasl_password

            self._producer = AIOKafkaProducer(**producer_config)
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "topic": self.config.topic,
                    "acks": self.config.acks,
                },
            )

        except KafkaError as e:
            self._connected = False
            self._producer = None
            raise BusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Flush pending messages and stop the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connection closed")

    async def publish(self, event: BusEvent) -> Optional[str]:
        """Publish one event and wait for the broker acknowledgment.

        Returns:
            ``partition:offset`` of the written message

        Raises:
            BusConnectionError: If not connected or the connection was lost
            BusTimeoutError: If the broker did not acknowledge in time
            BusError: For other Kafka errors
        """
        if not self._producer:
            raise BusConnectionError("Not connected to Kafka")

        value = json.dumps(event.to_dict(), sort_keys=True, default=str).encode("utf-8")
        headers = [
            ("detail-type", event.detail_type.encode("utf-8")),
            ("source", event.source.encode("utf-8")),
        ]

        try:
            metadata = await self._producer.send_and_wait(
                self.config.topic,
                value=value,
                key=event.source.encode("utf-8"),
                headers=headers,
            )
        except KafkaTimeoutError as e:
            raise BusTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise BusConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise BusError(f"Kafka send failed: {e}") from e

        logger.debug(
            "Event published to Kafka",
            extra={
                "topic": self.config.topic,
                "partition": metadata.partition,
                "offset": metadata.offset,
                "source": event.source,
            },
        )
        return f"{metadata.partition}:{metadata.offset}"
