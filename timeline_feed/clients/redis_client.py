"""
Redis client construction.

Keyspace owned by this package:
  • Timelines     — ZSET  timeline:forYou | timeline:user:{id} | timeline:following:{id}
                    score = creation time (ms), member = content id
  • Tombstones    — STRING timeline:tombstone:{id}   (TTL, see TimelineStore)
  • Feed pages    — STRING feed:{type}:{viewer}:{cursor}:{limit}   (JSON, 10s TTL)
  • Rate windows  — STRING rl:{scope}:{identity}     (INCR counter, PEXPIRE window)

The handle is created by the composition root and passed to every consumer;
there is no module-level singleton.
"""
import logging

import redis.asyncio as aioredis

from timeline_feed.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


async def create_redis(settings: Settings = default_settings) -> aioredis.Redis:
    redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )
    await redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return redis


async def close_redis(redis: aioredis.Redis) -> None:
    await redis.aclose()
    logger.info("Redis connection closed")
