"""
Fan-out on write — applies content events to the Redis timelines.

content.created:
  1. Validate; drop malformed events (logged, never retried).
  2. Drop the event if the content has a tombstone (delete arrived first).
  3. ZADD the author's timeline and, for top-level content, timeline:forYou
     in one MULTI/EXEC.
  4. Top-level only: look up followers in TiDB and ZADD every
     timeline:following:{id}, in bounded pipelined batches.
  5. Trim every touched key to timeline_max_entries (best-effort).

content.deleted:
  1. Tombstone the id so a late content.created cannot resurrect it.
  2. ZREM from timeline:forYou and the author's timeline in one MULTI/EXEC.
  3. Top-level with a known author: ZREM from every follower timeline.

Delivery is at-least-once. ZADD/ZREM are idempotent, so redelivery converges.
Follower fan-out failures are logged with the author id and swallowed: the
author/global writes are already committed and redelivery repairs the rest.
"""
import logging
import math
import time
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from timeline_feed.config import Settings, settings as default_settings
from timeline_feed.content_store import ContentStore
from timeline_feed.schemas import ContentCreated, ContentDeleted
from timeline_feed.telemetry import (
    FANOUT_EVENTS_TOTAL,
    FANOUT_FOLLOWERS,
    TIMELINE_ERRORS_TOTAL,
)
from timeline_feed.timeline_store import (
    FOR_YOU_KEY,
    TimelineStore,
    following_timeline_key,
    user_timeline_key,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def event_score(created_at_ms: Any) -> int:
    """Creation time in ms when usable, else ingestion wall clock."""
    if (
        isinstance(created_at_ms, (int, float))
        and not isinstance(created_at_ms, bool)
        and math.isfinite(created_at_ms)
    ):
        return int(created_at_ms)
    return int(time.time() * 1000)


class FanoutService:
    def __init__(
        self,
        timelines: TimelineStore,
        content: ContentStore,
        settings: Settings = default_settings,
    ) -> None:
        self._timelines = timelines
        self._content = content
        self._settings = settings

    async def handle(self, topic: str, payload: Any) -> bool:
        """Apply one event; returns False when it was dropped."""
        if topic == self._settings.kafka_topic_content_created:
            applied = await self.on_created(payload)
        elif topic == self._settings.kafka_topic_content_deleted:
            applied = await self.on_deleted(payload)
        else:
            logger.warning("Ignoring message on unexpected topic %s", topic)
            return False

        FANOUT_EVENTS_TOTAL.labels(
            topic=topic, outcome="applied" if applied else "dropped"
        ).inc()
        return applied

    # ─────────────────────────── Created ─────────────────────────────────

    async def on_created(self, payload: Any) -> bool:
        try:
            event = ContentCreated.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Malformed content.created event %s: %d error(s)",
                payload, exc.error_count(),
            )
            return False

        with tracer.start_as_current_span("fanout.created") as span:
            span.set_attribute("content.id", event.id)
            span.set_attribute("content.author_id", event.author_id)
            span.set_attribute("content.top_level", event.is_top_level)

            if await self._timelines.is_deleted(event.id):
                logger.info(
                    "Content %s was deleted before its create event arrived — skipping",
                    event.id,
                )
                return False

            score = event_score(event.created_at_ms)
            author_key = user_timeline_key(event.author_id)
            keys = [author_key, FOR_YOU_KEY] if event.is_top_level else [author_key]

            await self._timelines.upsert_many(keys, event.id, score)
            await self._timelines.trim_quietly(keys)

            if event.is_top_level:
                touched = await self._fanout_to_followers(event.author_id, event.id, score)
                span.set_attribute("fanout.follower_count", touched)

            logger.debug("Applied content.created %s (score=%s)", event.id, score)
            return True

    async def _fanout_to_followers(self, author_id: int, content_id: int, score: int) -> int:
        t0 = time.perf_counter()
        try:
            followers = await self._content.follower_ids(author_id)
            FANOUT_FOLLOWERS.observe(len(followers))
            if not followers:
                return 0

            keys = [following_timeline_key(fid) for fid in followers]
            await self._timelines.upsert_for_keys(keys, content_id, score)
            await self._timelines.trim_quietly(keys)
        except Exception as exc:
            TIMELINE_ERRORS_TOTAL.labels(operation="fanout").inc()
            logger.error(
                "Failed to fan out content %s for author %s: %s",
                content_id, author_id, exc,
            )
            return 0

        logger.info(
            "Fan-out complete: content %s → %d followers (%.1fms)",
            content_id, len(followers), (time.perf_counter() - t0) * 1000,
        )
        return len(followers)

    # ─────────────────────────── Deleted ─────────────────────────────────

    async def on_deleted(self, payload: Any) -> bool:
        try:
            event = ContentDeleted.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Malformed content.deleted event %s: %d error(s)",
                payload, exc.error_count(),
            )
            return False

        with tracer.start_as_current_span("fanout.deleted") as span:
            span.set_attribute("content.id", event.id)

            await self._timelines.mark_deleted(event.id)

            keys = [FOR_YOU_KEY]
            if event.author_id:
                keys.append(user_timeline_key(event.author_id))
            await self._timelines.remove_many(keys, event.id)

            if event.is_top_level and event.author_id:
                await self._remove_from_followers(event.author_id, event.id)

            logger.debug("Applied content.deleted %s (deletedAtMs=%s)", event.id, event.deleted_at_ms)
            return True

    async def _remove_from_followers(self, author_id: int, content_id: int) -> None:
        try:
            followers = await self._content.follower_ids(author_id)
            if not followers:
                return
            keys = [following_timeline_key(fid) for fid in followers]
            await self._timelines.remove_for_keys(keys, content_id)
        except Exception as exc:
            TIMELINE_ERRORS_TOTAL.labels(operation="unfanout").inc()
            logger.error(
                "Failed to remove content %s from followers of author %s: %s",
                content_id, author_id, exc,
            )
