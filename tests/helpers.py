"""Shared test doubles for the timeline and feed tests."""
import asyncio
from typing import Optional

import fakeredis
from redis.exceptions import ConnectionError as RedisConnectionError

from timeline_feed.schemas import FeedPage, FeedType


def run(coro):
    return asyncio.run(coro)


def make_redis(server: Optional[fakeredis.FakeServer] = None) -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(
        server=server or fakeredis.FakeServer(), decode_responses=True
    )


class FakeContentStore:
    """In-memory authoritative store: pages are lists of (id, created_at_ms)."""

    def __init__(
        self,
        followers: Optional[dict[int, list[int]]] = None,
        pages: Optional[dict[FeedType, list[tuple[int, int]]]] = None,
    ) -> None:
        self.followers = followers or {}
        self.pages = pages or {}
        self.follower_calls: list[int] = []
        self.page_calls: list[tuple] = []
        self.fail_followers = False

    async def follower_ids(self, author_id: int) -> list[int]:
        self.follower_calls.append(author_id)
        if self.fail_followers:
            raise ConnectionError("graph store down")
        return list(self.followers.get(author_id, []))

    async def feed_page(
        self,
        feed_type: FeedType,
        cursor_ms: int,
        limit: int,
        viewer_id: Optional[int] = None,
    ) -> FeedPage:
        self.page_calls.append((feed_type, cursor_ms, limit, viewer_id))
        rows = sorted(
            (r for r in self.pages.get(feed_type, []) if r[1] <= cursor_ms),
            key=lambda r: (r[1], r[0]),
            reverse=True,
        )[:limit]
        full = len(rows) == limit
        return FeedPage(
            posts=[r[0] for r in rows],
            next_cursor=rows[-1][1] if full and rows else None,
        )


class _BrokenPipeline:
    def __getattr__(self, name):
        if name == "execute":
            async def execute(*args, **kwargs):
                raise RedisConnectionError("redis is down")
            return execute
        return lambda *args, **kwargs: self


class BrokenRedis:
    """Stands in for an unreachable Redis: every command fails."""

    def pipeline(self, transaction: bool = True) -> _BrokenPipeline:
        return _BrokenPipeline()

    def __getattr__(self, name):
        async def command(*args, **kwargs):
            raise RedisConnectionError("redis is down")
        return command
