"""
Bounded, time-ordered timelines in Redis sorted sets.

  timeline:forYou             — every top-level content id
  timeline:user:{id}          — one author's own content (replies included)
  timeline:following:{id}     — materialised union of followed authors' content

score = creation time in ms, member = content id. Each ZSET is capped at
settings.timeline_max_entries; writes never reject, they are followed by a
trim that drops the lowest-scored (oldest) members.

The fan-out consumer is the only writer. The feed service only reads.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Sequence

import redis.asyncio as aioredis

from timeline_feed.config import settings
from timeline_feed.telemetry import TIMELINE_ERRORS_TOTAL

logger = logging.getLogger(__name__)

FOR_YOU_KEY = "timeline:forYou"


def user_timeline_key(user_id: int) -> str:
    return f"timeline:user:{user_id}"


def following_timeline_key(user_id: int) -> str:
    return f"timeline:following:{user_id}"


def tombstone_key(content_id: int) -> str:
    return f"timeline:tombstone:{content_id}"


@dataclass(frozen=True)
class TimelineEntry:
    content_id: int
    score: float


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class TimelineStore:
    def __init__(
        self,
        redis: aioredis.Redis,
        max_entries: int = settings.timeline_max_entries,
        tombstone_ttl_seconds: int = settings.tombstone_ttl_seconds,
        batch_size: int = settings.fanout_batch_size,
        max_concurrency: int = settings.fanout_max_concurrency,
    ) -> None:
        self._redis = redis
        self.max_entries = max_entries
        self._tombstone_ttl = tombstone_ttl_seconds
        self._batch_size = max(1, batch_size)
        self._max_concurrency = max(1, max_concurrency)

    # ─────────────────────── Single key ──────────────────────────────────

    async def upsert(self, key: str, content_id: int, score: float) -> None:
        await self._redis.zadd(key, {str(content_id): score})

    async def remove(self, key: str, content_id: int) -> None:
        await self._redis.zrem(key, str(content_id))

    async def cardinality(self, key: str) -> int:
        return await self._redis.zcard(key)

    async def range_desc_at_most(
        self,
        key: str,
        max_score: float,
        limit: int,
    ) -> list[TimelineEntry]:
        """
        Up to `limit` entries with score <= max_score, newest first.
        Equal scores come back in Redis' reverse-lexicographic member order.
        """
        if limit <= 0:
            return []
        rows = await self._redis.zrevrangebyscore(
            key, max_score, "-inf", start=0, num=limit, withscores=True
        )
        entries: list[TimelineEntry] = []
        for member, score in rows:
            try:
                entries.append(TimelineEntry(int(member), float(score)))
            except (TypeError, ValueError):
                logger.warning("Skipping non-numeric member %r in %s", member, key)
        return entries

    async def trim_to_capacity(self, key: str, cap: int | None = None) -> int:
        """Drop the lowest-scored members beyond `cap`; returns how many went."""
        cap = self.max_entries if cap is None else cap
        return await self._redis.zremrangebyrank(key, 0, -(cap + 1))

    # ─────────────────────── Atomic multi-key ────────────────────────────

    async def upsert_many(self, keys: Iterable[str], content_id: int, score: float) -> None:
        pipe = self._redis.pipeline(transaction=True)
        for key in keys:
            pipe.zadd(key, {str(content_id): score})
        await pipe.execute()

    async def remove_many(self, keys: Iterable[str], content_id: int) -> None:
        pipe = self._redis.pipeline(transaction=True)
        for key in keys:
            pipe.zrem(key, str(content_id))
        await pipe.execute()

    # ─────────────────────── Fan-out batches ─────────────────────────────

    async def _run_chunked(
        self,
        keys: Sequence[str],
        command: Callable[[object, str], None],
    ) -> None:
        """
        Issue `command` for every key as pipelined chunks of batch_size keys,
        with at most max_concurrency chunks in flight.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(chunk: Sequence[str]) -> None:
            async with semaphore:
                pipe = self._redis.pipeline(transaction=False)
                for key in chunk:
                    command(pipe, key)
                await pipe.execute()

        await asyncio.gather(*[run(c) for c in _chunks(keys, self._batch_size)])

    async def upsert_for_keys(self, keys: Sequence[str], content_id: int, score: float) -> None:
        member = str(content_id)
        await self._run_chunked(keys, lambda pipe, key: pipe.zadd(key, {member: score}))

    async def remove_for_keys(self, keys: Sequence[str], content_id: int) -> None:
        member = str(content_id)
        await self._run_chunked(keys, lambda pipe, key: pipe.zrem(key, member))

    async def trim_quietly(self, keys: Sequence[str]) -> None:
        """Best-effort trim; failures are logged, never raised."""
        cap = self.max_entries
        try:
            await self._run_chunked(
                keys, lambda pipe, key: pipe.zremrangebyrank(key, 0, -(cap + 1))
            )
        except Exception as exc:
            TIMELINE_ERRORS_TOTAL.labels(operation="trim").inc()
            logger.warning("Failed to trim %d timeline key(s): %s", len(keys), exc)

    # ─────────────────────── Tombstones ──────────────────────────────────

    async def mark_deleted(self, content_id: int) -> None:
        await self._redis.set(tombstone_key(content_id), "1", ex=self._tombstone_ttl)

    async def is_deleted(self, content_id: int) -> bool:
        return bool(await self._redis.exists(tombstone_key(content_id)))
