"""
Feed assembly — GET /feed/page is served from here.

  1. Feed cache      — Redis STRING per (type, viewer, cursor, limit), 10s TTL
  2. Timeline        — Redis ZSET maintained by the fan-out worker (fast path)
  3. Authoritative   — SQL query, used when the timeline is missing or short;
                       its ids are appended after the timeline's, deduplicated

Cache and timeline failures degrade to the authoritative store; a feed read
never fails because Redis is unhealthy.
"""
import logging
import time
from typing import Optional

import redis.asyncio as aioredis
from opentelemetry import trace

from timeline_feed.config import settings
from timeline_feed.content_store import ContentStore
from timeline_feed.schemas import FeedPage, FeedType
from timeline_feed.telemetry import FEED_PAGES_TOTAL, TIMELINE_ERRORS_TOTAL
from timeline_feed.timeline_store import (
    FOR_YOU_KEY,
    TimelineStore,
    following_timeline_key,
    user_timeline_key,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_cursor(skew_ms: int = settings.feed_cursor_skew_ms) -> int:
    """First-page cursor: slightly in the future so just-created content shows."""
    return int(time.time() * 1000) + skew_ms


def timeline_key_for(feed_type: FeedType, viewer_id: Optional[int]) -> Optional[str]:
    if feed_type is FeedType.FOR_YOU:
        return FOR_YOU_KEY
    if feed_type is FeedType.TWEETS and viewer_id:
        return user_timeline_key(viewer_id)
    if feed_type is FeedType.FOLLOWING and viewer_id:
        return following_timeline_key(viewer_id)
    return None


def merge_pages(timeline_page: FeedPage, db_page: FeedPage, limit: int) -> FeedPage:
    """
    Timeline ids first, in their order, then authoritative ids not already
    present, up to `limit`.
    """
    posts = list(timeline_page.posts)
    seen = set(posts)
    for content_id in db_page.posts:
        if len(posts) >= limit:
            break
        if content_id not in seen:
            posts.append(content_id)
            seen.add(content_id)

    used_db = len(posts) > len(timeline_page.posts)
    if used_db and db_page.next_cursor is not None:
        next_cursor = db_page.next_cursor
    elif timeline_page.next_cursor is not None:
        next_cursor = timeline_page.next_cursor
    else:
        next_cursor = db_page.next_cursor
    return FeedPage(posts=posts, next_cursor=next_cursor)


def advance_cursor(page: FeedPage, cursor_ms: int) -> FeedPage:
    """
    Reads are inclusive (score <= cursor), so a full page whose items all share
    the cursor's millisecond would come back unchanged forever. Step past that
    millisecond instead; further items tied on it are skipped.
    """
    if page.next_cursor is not None and page.next_cursor >= cursor_ms:
        return FeedPage(posts=page.posts, next_cursor=cursor_ms - 1)
    return page


class FeedCache:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = settings.feed_cache_ttl_seconds,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def key(
        feed_type: FeedType,
        viewer_id: Optional[int],
        cursor_ms: int,
        limit: int,
    ) -> str:
        viewer = viewer_id if viewer_id is not None else "public"
        return f"feed:{feed_type.normalized}:{viewer}:{cursor_ms}:{limit}"

    async def get(self, key: str) -> Optional[FeedPage]:
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.warning("Failed to read feed cache %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            return FeedPage.model_validate_json(raw)
        except ValueError as exc:
            logger.warning("Discarding unreadable feed cache entry %s: %s", key, exc)
            return None

    async def set(self, key: str, page: FeedPage) -> None:
        try:
            await self._redis.set(key, page.model_dump_json(by_alias=True), ex=self._ttl)
        except Exception as exc:
            logger.warning("Failed to write feed cache %s: %s", key, exc)


class FeedService:
    def __init__(
        self,
        timelines: TimelineStore,
        content: ContentStore,
        cache: FeedCache,
    ) -> None:
        self._timelines = timelines
        self._content = content
        self._cache = cache

    async def fetch_page(
        self,
        feed_type: FeedType,
        cursor_ms: int,
        limit: int,
        viewer_id: Optional[int] = None,
    ) -> FeedPage:
        with tracer.start_as_current_span("feed.fetch_page") as span:
            span.set_attribute("feed.type", feed_type.value)
            span.set_attribute("feed.cursor", cursor_ms)
            span.set_attribute("feed.limit", limit)

            key = FeedCache.key(feed_type, viewer_id, cursor_ms, limit)
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("Feed cache hit %s", key)
                FEED_PAGES_TOTAL.labels(source="cache").inc()
                span.set_attribute("feed.source", "cache")
                return cached

            page = advance_cursor(
                await self.build_feed(feed_type, cursor_ms, limit, viewer_id), cursor_ms
            )
            await self._cache.set(key, page)
            span.set_attribute("feed.posts_returned", len(page.posts))
            return page

    async def build_feed(
        self,
        feed_type: FeedType,
        cursor_ms: int,
        limit: int,
        viewer_id: Optional[int] = None,
    ) -> FeedPage:
        timeline_key = timeline_key_for(feed_type, viewer_id)
        if timeline_key:
            timeline_page = await self._timeline_page(timeline_key, cursor_ms, limit)
            if timeline_page is not None:
                if len(timeline_page.posts) >= limit:
                    FEED_PAGES_TOTAL.labels(source="timeline").inc()
                    return timeline_page

                db_page = await self._content.feed_page(feed_type, cursor_ms, limit, viewer_id)
                if not db_page.posts:
                    FEED_PAGES_TOTAL.labels(source="timeline").inc()
                    return timeline_page

                FEED_PAGES_TOTAL.labels(source="merged").inc()
                return merge_pages(timeline_page, db_page, limit)

        FEED_PAGES_TOTAL.labels(source="authoritative").inc()
        return await self._content.feed_page(feed_type, cursor_ms, limit, viewer_id)

    async def _timeline_page(
        self,
        key: str,
        cursor_ms: int,
        limit: int,
    ) -> Optional[FeedPage]:
        """Timeline slice as a page; None when empty or unreadable."""
        try:
            entries = await self._timelines.range_desc_at_most(key, cursor_ms, limit)
        except Exception as exc:
            TIMELINE_ERRORS_TOTAL.labels(operation="read").inc()
            logger.warning("Failed to read timeline %s: %s", key, exc)
            return None

        if not entries:
            return None
        has_more = len(entries) == limit
        return FeedPage(
            posts=[e.content_id for e in entries],
            next_cursor=int(entries[-1].score) if has_more else None,
        )
