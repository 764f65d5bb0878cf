"""Kafka event envelope plus the producer and consumer loops around it.

The API process publishes outbox rows through `KafkaBus`; the notification
worker reads them back with `consume_forever`.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from gasmarket.common.config import settings
from gasmarket.common.logging import logger, request_context


class EventEnvelope(BaseModel):
    """Wire shape of every marketplace event."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class KafkaBus:
    """Lazily started producer used by the outbox publisher.

    Messages are keyed by aggregate id so every event of one order lands on
    the same partition and is consumed in commit order.
    """

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            event.model_dump_json().encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def _dispatch(topic: str, offset: int, raw: bytes, group_id: str, handler: EventHandler) -> None:
    try:
        event = EventEnvelope.model_validate_json(raw)
    except ValidationError as exc:
        logger.error("event_undecodable topic=%s group=%s offset=%s error=%s", topic, group_id, offset, exc)
        return
    with request_context(event.trace_id):
        logger.info(
            "event_received topic=%s group=%s event_id=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_id,
            event.aggregate_id,
        )
        try:
            await handler(event)
        except Exception as exc:
            logger.exception("handler_error topic=%s group=%s offset=%s error=%s", topic, group_id, offset, exc)


async def consume_forever(topics: list[str], group_id: str, handler: EventHandler) -> None:
    """Feed every envelope on `topics` to `handler`, reconnecting on broker errors.

    Offsets are committed after each fetched batch; a handler failure is
    logged and does not block the partition.
    """

    while True:
        consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                for partition, messages in batches.items():
                    for msg in messages:
                        await _dispatch(partition.topic, msg.offset, msg.value, group_id, handler)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topics=%s group=%s error=%s", ",".join(topics), group_id, exc)
            await asyncio.sleep(2)
        finally:
            await consumer.stop()
