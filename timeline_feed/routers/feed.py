"""
Feed page endpoint — GET /feed/page?type=<FeedType>&cursor=<ms>&limit=<n>&viewer_id=<id>

Pagination: pass the previous response's nextCursor as `cursor`. Omitting it
(or sending a non-positive value) starts from "now + skew" so content created
a moment ago is included. nextCursor is null once the feed is exhausted.
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from timeline_feed.config import settings
from timeline_feed.dependencies import get_feed_service
from timeline_feed.feed_service import FeedService, default_cursor
from timeline_feed.schemas import FeedPageResponse, FeedType
from timeline_feed.telemetry import FEED_LATENCY

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/page", response_model=FeedPageResponse)
async def get_feed_page(
    feed_type: FeedType = Query(..., alias="type", description="Which feed to read"),
    cursor: Optional[int] = Query(None, description="nextCursor of the previous page"),
    limit: int = Query(settings.feed_default_limit, ge=1, le=settings.feed_max_limit),
    viewer_id: Optional[int] = Query(None, description="Requesting user, if signed in"),
    feeds: FeedService = Depends(get_feed_service),
):
    start_time = time.time()
    cursor_ms = cursor if cursor is not None and cursor > 0 else default_cursor()

    try:
        page = await feeds.fetch_page(feed_type, cursor_ms, limit, viewer_id)
    except Exception as exc:
        logger.error(
            "Failed to build feed (type=%s, viewer=%s): %s", feed_type.value, viewer_id, exc
        )
        return JSONResponse(status_code=500, content={"error": "Failed to load feed"})

    FEED_LATENCY.observe(time.time() - start_time)
    return FeedPageResponse(posts=page.posts, next_cursor=page.next_cursor)
