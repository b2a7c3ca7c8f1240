"""
Timeline reconciliation — POST /timelines/replay

Fan-out is not transactional across keys: a worker crash or a Redis outage
mid-event can leave follower timelines missing content. Replaying the
content.created events for a time range repairs them, because the consumer
is idempotent and deleted content is blocked by its tombstone.

Guarded by the 'write' rate-limit scope.
"""
import logging

from fastapi import APIRouter, Depends, status
from opentelemetry import trace

from timeline_feed.clients.kafka_producer import EventPublisher
from timeline_feed.content_store import SqlContentStore
from timeline_feed.dependencies import get_content_store, get_publisher
from timeline_feed.rate_limit import rate_limit
from timeline_feed.schemas import ReplayRequest, ReplayResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post(
    "/replay",
    response_model=ReplayResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("write_limiter"))],
)
async def replay_created_events(
    body: ReplayRequest,
    content: SqlContentStore = Depends(get_content_store),
    publisher: EventPublisher = Depends(get_publisher),
):
    with tracer.start_as_current_span("replay_created_events") as span:
        records = await content.content_since(body.since_ms, body.limit)
        span.set_attribute("replay.found", len(records))

        published = 0
        for record in records:
            if await publisher.content_created(
                record.id, record.author_id, record.parent_id, record.created_at_ms
            ):
                published += 1

        logger.info(
            "Replayed %d/%d content.created events since %s",
            published, len(records), body.since_ms,
        )
        return ReplayResponse(found=len(records), published=published)
