"""
Pydantic schemas shared by the API, the feed service and the fan-out consumer.
Event payloads use the camelCase field names that travel on the Kafka topics.
"""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt


# ──────────────────────────── Feed ────────────────────────────────────────

class FeedType(str, Enum):
    FOR_YOU = "For You"
    FOLLOWING = "Following"
    LIKED = "Liked"
    TWEETS = "Tweets"
    REPLIES = "Replies"
    MEDIA = "Media"
    SAVED = "Saved"
    NOTIFICATIONS = "Notifications"

    @property
    def normalized(self) -> str:
        """'For You' → 'foryou'; used in cache keys."""
        return "".join(self.value.split()).lower()


class FeedPage(BaseModel):
    """One page of content ids, newest first."""
    model_config = ConfigDict(populate_by_name=True)

    posts: list[int] = Field(default_factory=list)
    # Score of the last id when the page is full, None at end of feed
    next_cursor: Optional[int] = Field(None, alias="nextCursor")


class FeedPageResponse(FeedPage):
    pass


# ──────────────────────────── Events ──────────────────────────────────────

class ContentCreated(BaseModel):
    """Payload of a content.created message."""
    model_config = ConfigDict(populate_by_name=True)

    id: PositiveInt
    author_id: PositiveInt = Field(..., alias="authorId")
    # Any truthy value marks a reply
    parent_id: Any = Field(None, alias="parentId")
    # Anything but a finite number falls back to ingestion time
    created_at_ms: Any = Field(None, alias="createdAtMs")

    @property
    def is_top_level(self) -> bool:
        return not self.parent_id


class ContentDeleted(BaseModel):
    """Payload of a content.deleted message."""
    model_config = ConfigDict(populate_by_name=True)

    id: PositiveInt
    author_id: Optional[PositiveInt] = Field(None, alias="authorId")
    parent_id: Any = Field(None, alias="parentId")
    deleted_at_ms: Any = Field(None, alias="deletedAtMs")

    @property
    def is_top_level(self) -> bool:
        return not self.parent_id


# ──────────────────────────── Errors ──────────────────────────────────────

class RateLimitedResponse(BaseModel):
    error: str = "Too many requests"
    retry_after_ms: int = Field(..., alias="retryAfterMs")


# ──────────────────────────── Reconciliation ──────────────────────────────

class ReplayRequest(BaseModel):
    since_ms: int = Field(..., gt=0, description="Replay content created at or after this time")
    limit: int = Field(1000, ge=1, le=10_000)


class ReplayResponse(BaseModel):
    found: int
    published: int
