"""
Fixed-window request governor backed by Redis.

Per (scope, identity) key rl:{scope}:{identity}:
  MULTI  INCR key ; PTTL key  EXEC
  first hit of a window (or a key that lost its TTL) → PEXPIRE key window_ms
  count > max_requests → reject with Retry-After = remaining window

Two scopes are configured: 'global' (every request, applied as middleware)
and 'write' (content-creation routes, applied as a dependency). If Redis is
unavailable the governor fails open.
"""
import inspect
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import redis.asyncio as aioredis
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from timeline_feed.schemas import RateLimitedResponse
from timeline_feed.telemetry import RATE_LIMITED_TOTAL

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[Request], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_ms: int = 0


class RateLimiter:
    def __init__(
        self,
        redis: aioredis.Redis,
        scope: str,
        window_ms: int,
        max_requests: int,
    ) -> None:
        self._redis = redis
        self.scope = scope
        self.window_ms = window_ms
        self.max_requests = max_requests

    def key(self, identity: str) -> str:
        return f"rl:{self.scope}:{identity}"

    async def hit(self, identity: str) -> RateLimitDecision:
        key = self.key(identity)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.pttl(key)
            count, ttl_ms = await pipe.execute()

            if count == 1 or ttl_ms is None or ttl_ms < 0:
                await self._redis.pexpire(key, self.window_ms)
                ttl_ms = self.window_ms
        except Exception as exc:
            logger.warning("Rate limiter '%s' unavailable, allowing request: %s", self.scope, exc)
            return RateLimitDecision(allowed=True, count=0)

        if count > self.max_requests:
            RATE_LIMITED_TOTAL.labels(scope=self.scope).inc()
            return RateLimitDecision(allowed=False, count=count, retry_after_ms=int(ttl_ms))
        return RateLimitDecision(allowed=True, count=count)


async def resolve_identity(request: Request, resolver: Optional[IdentityResolver] = None) -> str:
    """resolver (e.g. user id) → peer address → first X-Forwarded-For hop → 'unknown'."""
    if resolver is not None:
        identity = resolver(request)
        if inspect.isawaitable(identity):
            identity = await identity
        if identity:
            return str(identity)

    if request.client and request.client.host:
        return request.client.host

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return "unknown"


def retry_after_header(retry_after_ms: int) -> dict[str, str]:
    return {"Retry-After": str(math.ceil(retry_after_ms / 1000))}


def rate_limited_body(retry_after_ms: int) -> dict:
    return RateLimitedResponse(retryAfterMs=retry_after_ms).model_dump(by_alias=True)


def rate_limited_response(retry_after_ms: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=rate_limited_body(retry_after_ms),
        headers=retry_after_header(retry_after_ms),
    )


class RateLimitExceeded(Exception):
    """Raised by the rate_limit dependency; rendered by rate_limit_exceeded_handler."""

    def __init__(self, scope: str, retry_after_ms: int) -> None:
        super().__init__(f"rate limit exceeded for scope '{scope}'")
        self.scope = scope
        self.retry_after_ms = retry_after_ms


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return rate_limited_response(exc.retry_after_ms)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the limiter stored at app.state.<state_attr> to every request."""

    def __init__(
        self,
        app,  # noqa: ANN001
        state_attr: str = "global_limiter",
        resolver: Optional[IdentityResolver] = None,
        skip_prefixes: tuple[str, ...] = ("/health", "/metrics"),
    ) -> None:
        super().__init__(app)
        self._state_attr = state_attr
        self._resolver = resolver
        self._skip_prefixes = skip_prefixes

    async def dispatch(self, request: Request, call_next):
        limiter: Optional[RateLimiter] = getattr(request.app.state, self._state_attr, None)
        if limiter is None or request.url.path.startswith(self._skip_prefixes):
            return await call_next(request)

        identity = await resolve_identity(request, self._resolver)
        decision = await limiter.hit(identity)
        if not decision.allowed:
            return rate_limited_response(decision.retry_after_ms)
        return await call_next(request)


def rate_limit(state_attr: str, resolver: Optional[IdentityResolver] = None):
    """
    FastAPI dependency enforcing the limiter at app.state.<state_attr>,
    e.g. Depends(rate_limit("write_limiter")) on content-creation routes.
    The app must register rate_limit_exceeded_handler for RateLimitExceeded.
    """
    async def dependency(request: Request) -> None:
        limiter: Optional[RateLimiter] = getattr(request.app.state, state_attr, None)
        if limiter is None:
            return
        identity = await resolve_identity(request, resolver)
        decision = await limiter.hit(identity)
        if not decision.allowed:
            raise RateLimitExceeded(limiter.scope, decision.retry_after_ms)

    return dependency
