"""
Authoritative content store: the slower source of truth behind the timelines.

Two consumers:
  • fan-out worker — follower ids for an author
  • feed service   — newest-first pages per feed type when a timeline is
                     missing or too short

Every page query filters created_at <= cursor and orders by
(created_at desc, id desc) so pagination is deterministic on timestamp ties.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Protocol

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeline_feed.models import Bookmark, Follow, Like, Notification, Post, PostMedia
from timeline_feed.schemas import FeedPage, FeedType

logger = logging.getLogger(__name__)

# Feed types that only make sense for a known viewer
PERSONAL_FEEDS = frozenset(FeedType) - {FeedType.FOR_YOU}


class ContentRecord(NamedTuple):
    id: int
    author_id: int
    parent_id: Optional[int]
    created_at_ms: int


EPOCH = datetime(1970, 1, 1)


def ms_to_datetime(ms: float) -> datetime:
    """Epoch milliseconds → naive UTC datetime, as stored by TiDB."""
    return EPOCH + timedelta(milliseconds=ms)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return (value - EPOCH) // timedelta(milliseconds=1)


class ContentStore(Protocol):
    async def follower_ids(self, author_id: int) -> list[int]: ...

    async def feed_page(
        self,
        feed_type: FeedType,
        cursor_ms: int,
        limit: int,
        viewer_id: Optional[int] = None,
    ) -> FeedPage: ...


class SqlContentStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def follower_ids(self, author_id: int) -> list[int]:
        async with self._sessions() as session:
            rows = await session.execute(
                select(Follow.follower_id).where(Follow.following_id == author_id)
            )
            return [row[0] for row in rows.all()]

    async def feed_page(
        self,
        feed_type: FeedType,
        cursor_ms: int,
        limit: int,
        viewer_id: Optional[int] = None,
    ) -> FeedPage:
        if feed_type in PERSONAL_FEEDS and viewer_id is None:
            return FeedPage()

        stmt = self._page_query(feed_type, ms_to_datetime(cursor_ms), viewer_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt.limit(limit))).all()

        ids = [row[0] for row in rows]
        has_more = len(ids) == limit
        next_cursor = datetime_to_ms(rows[-1][1]) if has_more and rows else None
        return FeedPage(posts=ids, next_cursor=next_cursor)

    def _page_query(
        self,
        feed_type: FeedType,
        cursor: datetime,
        viewer_id: Optional[int],
    ) -> Select:
        if feed_type is FeedType.NOTIFICATIONS:
            return (
                select(Notification.id, Notification.created_at)
                .where(
                    Notification.receiver_id == viewer_id,
                    Notification.created_at <= cursor,
                )
                .order_by(Notification.created_at.desc(), Notification.id.desc())
            )

        stmt = select(Post.id, Post.created_at).where(Post.created_at <= cursor)

        if feed_type is FeedType.FOR_YOU:
            stmt = stmt.where(Post.parent_id.is_(None))
        elif feed_type is FeedType.FOLLOWING:
            following = select(Follow.following_id).where(Follow.follower_id == viewer_id)
            stmt = stmt.where(Post.author_id.in_(following), Post.parent_id.is_(None))
        elif feed_type is FeedType.TWEETS:
            stmt = stmt.where(Post.author_id == viewer_id, Post.parent_id.is_(None))
        elif feed_type is FeedType.REPLIES:
            stmt = stmt.where(Post.author_id == viewer_id, Post.parent_id.is_not(None))
        elif feed_type is FeedType.LIKED:
            stmt = stmt.where(Post.id.in_(select(Like.post_id).where(Like.user_id == viewer_id)))
        elif feed_type is FeedType.SAVED:
            stmt = stmt.where(
                Post.id.in_(select(Bookmark.post_id).where(Bookmark.user_id == viewer_id))
            )
        elif feed_type is FeedType.MEDIA:
            stmt = stmt.where(
                Post.author_id == viewer_id,
                Post.id.in_(select(PostMedia.post_id)),
            )

        return stmt.order_by(Post.created_at.desc(), Post.id.desc())

    async def content_since(self, since_ms: int, limit: int) -> list[ContentRecord]:
        """Oldest-first content created at or after `since_ms`, for event replay."""
        stmt = (
            select(Post.id, Post.author_id, Post.parent_id, Post.created_at)
            .where(Post.created_at >= ms_to_datetime(since_ms))
            .order_by(Post.created_at.asc(), Post.id.asc())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [
            ContentRecord(row[0], row[1], row[2], datetime_to_ms(row[3]))
            for row in rows
        ]
