"""
FastAPI dependencies resolving the services built by the lifespan handler.
Everything lives on app.state; nothing is constructed lazily on first use.
"""
import redis.asyncio as aioredis
from fastapi import Request

from timeline_feed.clients.kafka_producer import EventPublisher
from timeline_feed.content_store import SqlContentStore
from timeline_feed.feed_service import FeedService


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_feed_service(request: Request) -> FeedService:
    return request.app.state.feed_service


def get_content_store(request: Request) -> SqlContentStore:
    return request.app.state.content_store


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher
