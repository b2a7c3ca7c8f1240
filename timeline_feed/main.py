"""
Timeline Feed API — entry point and composition root.

Startup sequence (lifespan):
  1. Connect to Redis          → timelines, feed cache, rate windows
  2. Create the TiDB engine    → authoritative content store
  3. Start the Kafka producer  → event replay (reconciliation)
  4. Build TimelineStore, SqlContentStore, FeedCache, FeedService
  5. Build the 'global' and 'write' rate limiters
All of it is attached to app.state and torn down in reverse on shutdown.

The fan-out consumer runs as a separate process: python -m timeline_feed.worker
"""
import logging

from contextlib import AsyncExitStack, asynccontextmanager
from fastapi import Depends, FastAPI
from prometheus_client import make_asgi_app

from timeline_feed.clients.kafka_producer import EventPublisher, create_producer
from timeline_feed.clients.redis_client import close_redis, create_redis
from timeline_feed.config import settings
from timeline_feed.content_store import SqlContentStore
from timeline_feed.database import create_engine, create_session_factory
from timeline_feed.dependencies import get_redis
from timeline_feed.feed_service import FeedCache, FeedService
from timeline_feed.rate_limit import (
    RateLimitExceeded,
    RateLimiter,
    RateLimitMiddleware,
    rate_limit_exceeded_handler,
)
from timeline_feed.routers import feed, timelines
from timeline_feed.telemetry import instrument_app, setup_logging, setup_tracing
from timeline_feed.timeline_store import TimelineStore

setup_logging()
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Timeline Feed API (env=%s)", settings.environment)

    async with AsyncExitStack() as stack:
        redis = await create_redis(settings)
        stack.push_async_callback(close_redis, redis)
        engine = create_engine()
        stack.push_async_callback(engine.dispose)
        producer = await create_producer(settings)
        stack.push_async_callback(producer.stop)

        _attach_services(app, redis, engine, producer)
        yield

        logger.info("Shutting down...")


def _attach_services(app: FastAPI, redis, engine, producer) -> None:
    """Build the services on top of the open connections and attach them to app.state."""
    timeline_store = TimelineStore(redis)
    content = SqlContentStore(create_session_factory(engine))

    app.state.redis = redis
    app.state.content_store = content
    app.state.publisher = EventPublisher(producer, settings)
    app.state.feed_service = FeedService(timeline_store, content, FeedCache(redis))
    app.state.global_limiter = RateLimiter(
        redis, "global", settings.rate_limit_window_ms, settings.rate_limit_max_requests
    )
    app.state.write_limiter = RateLimiter(
        redis, "write", settings.rate_limit_write_window_ms, settings.rate_limit_write_max_requests
    )

    logger.info("All services connected. API ready.")


app = FastAPI(
    title="Timeline Feed API",
    description=(
        "Fan-out-on-write timelines in Redis with an authoritative SQL "
        "fallback for paginated social feeds."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RateLimitMiddleware, state_attr="global_limiter")
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(timelines.router, prefix="/timelines", tags=["Timelines"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}


@app.get("/health/ready", tags=["Health"])
async def ready(redis=Depends(get_redis)):
    try:
        await redis.ping()
    except Exception as exc:
        logger.warning("Readiness check: Redis unavailable: %s", exc)
        return {"status": "degraded"}
    return {"status": "ok"}
