"""Kafka envelope and producer for payment link domain events.

Messages are keyed by the payment link id so every event of one link lands on
the same partition, in commit order.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from paylink.common.config import settings


class EventEnvelope(BaseModel):
    """Shape of every message published to the `payment_links.*` topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_type: str = "payment_link"
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def to_message(self) -> tuple[bytes, bytes, list[tuple[str, bytes]]]:
        """Key, value and headers for one Kafka record."""

        headers = [("event_type", self.event_type.encode("utf-8")), ("event_id", self.event_id.encode("utf-8"))]
        return self.aggregate_id.encode("utf-8"), json.dumps(self.model_dump()).encode("utf-8"), headers


class KafkaBus:
    """Producer started on first publish and stopped with the app."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        key, value, headers = event.to_message()
        producer = await self.producer()
        await producer.send_and_wait(topic, value, key=key, headers=headers)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
