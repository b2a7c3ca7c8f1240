"""
Fan-out Worker — Kafka consumer for content.created / content.deleted.

Consumption is at-least-once: auto-commit is off and the offset is committed
only after the message has been handled (or deliberately dropped). Handlers
are idempotent, so a crash between apply and commit only causes a replay.

Run with:  python -m timeline_feed.worker
"""
import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any

from aiokafka import AIOKafkaConsumer

from timeline_feed.clients.redis_client import close_redis, create_redis
from timeline_feed.config import settings
from timeline_feed.content_store import SqlContentStore
from timeline_feed.database import create_engine, create_session_factory
from timeline_feed.fanout import FanoutService
from timeline_feed.telemetry import setup_logging, setup_tracing
from timeline_feed.timeline_store import TimelineStore

logger = logging.getLogger(__name__)


def decode_event(raw: bytes | None) -> Any:
    """JSON-decode a message value; garbage becomes None and is dropped later."""
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Undecodable event payload (%d bytes): %s", len(raw), exc)
        return None


async def consume(consumer: AIOKafkaConsumer, fanout: FanoutService) -> None:
    async for msg in consumer:
        try:
            await fanout.handle(msg.topic, msg.value)
        except Exception as exc:
            logger.error("Fan-out error for %s on %s: %s", msg.value, msg.topic, exc)
        await consumer.commit()


async def run_worker() -> None:
    setup_logging()
    setup_tracing(f"{settings.service_name}-fanout")

    async with AsyncExitStack() as stack:
        engine = create_engine(pool_size=10, max_overflow=0)
        stack.push_async_callback(engine.dispose)
        redis = await create_redis(settings)
        stack.push_async_callback(close_redis, redis)
        fanout = FanoutService(
            TimelineStore(redis),
            SqlContentStore(create_session_factory(engine)),
            settings,
        )

        consumer = AIOKafkaConsumer(
            settings.kafka_topic_content_created,
            settings.kafka_topic_content_deleted,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.kafka_consumer_group,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            value_deserializer=decode_event,
        )
        await consumer.start()
        stack.push_async_callback(consumer.stop)
        logger.info(
            "Fan-out worker listening on topics '%s', '%s'",
            settings.kafka_topic_content_created,
            settings.kafka_topic_content_deleted,
        )

        await consume(consumer, fanout)


if __name__ == "__main__":
    asyncio.run(run_worker())
