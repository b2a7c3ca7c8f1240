"""
Async Kafka producer for content events.

Publishes two event types:
  content.created  — { id, authorId, parentId, createdAtMs }
  content.deleted  — { id, authorId, parentId, deletedAtMs }

Both are consumed by the fan-out worker. Publishing is fire-and-log: a failed
send is logged and never raised to the caller, which has already committed the
content to the authoritative store.
"""
import json
import logging
import time
from typing import Optional

from aiokafka import AIOKafkaProducer

from timeline_feed.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


async def create_producer(settings: Settings = default_settings) -> AIOKafkaProducer:
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        acks="all",          # wait for all in-sync replicas
        enable_idempotence=True,
    )
    await producer.start()
    logger.info("Kafka producer started → %s", settings.kafka_bootstrap_servers)
    return producer


class EventPublisher:
    def __init__(
        self,
        producer: AIOKafkaProducer,
        settings: Settings = default_settings,
    ) -> None:
        self._producer = producer
        self._settings = settings

    async def publish(self, topic: str, payload: dict) -> bool:
        try:
            await self._producer.send_and_wait(topic, payload)
        except Exception as exc:
            logger.error("Failed to publish event to %s: %s", topic, exc)
            return False
        logger.debug("Published %s event for id=%s", topic, payload.get("id"))
        return True

    async def content_created(
        self,
        content_id: int,
        author_id: int,
        parent_id: Optional[int],
        created_at_ms: int,
    ) -> bool:
        payload = {
            "id": content_id,
            "authorId": author_id,
            "parentId": parent_id,
            "createdAtMs": created_at_ms,
        }
        return await self.publish(self._settings.kafka_topic_content_created, payload)

    async def content_deleted(
        self,
        content_id: int,
        author_id: Optional[int],
        parent_id: Optional[int],
    ) -> bool:
        payload = {
            "id": content_id,
            "authorId": author_id,
            "parentId": parent_id,
            "deletedAtMs": int(time.time() * 1000),
        }
        return await self.publish(self._settings.kafka_topic_content_deleted, payload)
