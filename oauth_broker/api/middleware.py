"""Middleware for rate limiting, cache control and request correlation."""

import fnmatch
import logging
import math
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


class _Bucket:
    """Token bucket refilled continuously at ``rate`` tokens per second."""

    __slots__ = ("capacity", "rate", "tokens", "updated")

    def __init__(self, capacity: int, rate: float, now: float):
        self.capacity = capacity
        self.rate = rate
        self.tokens = float(capacity)
        self.updated = now

    def is_full(self, now: float) -> bool:
        return self.tokens + (now - self.updated) * self.rate >= self.capacity

    def take(self, now: float) -> Tuple[bool, float]:
        """Consume one token. Returns (allowed, seconds until the next token)."""
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        self.updated = now
        if self.tokens < 1:
            return False, (1 - self.tokens) / self.rate
        self.tokens -= 1
        return True, 0.0


class RateLimiter(BaseHTTPMiddleware):
    """
    Per-client token bucket limits for the credential endpoints.

    Clients are identified by their IP address. Buckets live in process
    memory, like the session store.
    """

    def __init__(
        self,
        app,
        default_rate_limit_per_minute: int = 60,
        default_rate_limit_burst: int = 10,
        endpoint_limits: Optional[Dict[str, Dict[str, Any]]] = None,
        include_paths: Optional[List[str]] = None,
        exclude_paths: Optional[List[str]] = None,
        max_buckets: int = 10000,
    ):
        """
        Args:
            app: The ASGI application
            default_rate_limit_per_minute: Sustained requests per minute per client
            default_rate_limit_burst: Requests a fresh client may send at once
            endpoint_limits: Overrides keyed by fnmatch path pattern, e.g.
                {'/oauth/token': {'rate_limit_per_minute': 30, 'rate_limit_burst': 5}}
            include_paths: Path prefixes subject to limiting
            exclude_paths: Path prefixes never limited, checked first
            max_buckets: Bucket count above which refilled, idle buckets are evicted
        """
        super().__init__(app)
        self.default_rate_limit_per_minute = default_rate_limit_per_minute
        self.default_rate_limit_burst = default_rate_limit_burst
        self.endpoint_limits = endpoint_limits or {}
        self.include_paths = include_paths or ["/oauth/token", "/oauth/register"]
        self.exclude_paths = exclude_paths or []
        self.max_buckets = max_buckets
        self.buckets: Dict[Tuple[str, str], _Bucket] = {}

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        if any(path.startswith(prefix) for prefix in self.exclude_paths) or not any(
            path.startswith(prefix) for prefix in self.include_paths
        ):
            return await call_next(request)

        pattern, per_minute, burst = self._limits_for(path)
        client = request.client.host if request.client else "unknown"
        now = time.monotonic()
        bucket = self.buckets.get((client, pattern))
        if bucket is None:
            if len(self.buckets) >= self.max_buckets:
                self._evict_idle(now)
            bucket = self.buckets[(client, pattern)] = _Bucket(burst, per_minute / 60.0, now)

        allowed, wait = bucket.take(now)
        if not allowed:
            logger.warning("Rate limit exceeded for %s on %s", client, path)
            response = JSONResponse(
                status_code=429,
                content={"error": "slow_down", "error_description": "Rate limit exceeded"},
                headers={"Retry-After": str(max(1, math.ceil(wait)))},
            )
        else:
            response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(per_minute)
        response.headers["X-RateLimit-Remaining"] = str(int(bucket.tokens))
        return response

    def _evict_idle(self, now: float) -> None:
        """Drop buckets that have refilled completely; they behave like new ones."""
        idle = [key for key, bucket in self.buckets.items() if bucket.is_full(now)]
        for key in idle:
            del self.buckets[key]
        logger.debug("Evicted %d idle rate limit buckets", len(idle))

    def _limits_for(self, path: str) -> Tuple[str, int, int]:
        for pattern, config in self.endpoint_limits.items():
            if fnmatch.fnmatch(path, pattern):
                return (
                    pattern,
                    config.get("rate_limit_per_minute", self.default_rate_limit_per_minute),
                    config.get("rate_limit_burst", self.default_rate_limit_burst),
                )
        return "*", self.default_rate_limit_per_minute, self.default_rate_limit_burst


class CacheControl(BaseHTTPMiddleware):
    """Marks responses that carry codes, tokens or session data as non-cacheable."""

    def __init__(self, app, no_store_paths: Optional[List[str]] = None):
        super().__init__(app)
        self.no_store_paths = no_store_paths or ["/oauth/", "/api/session"]

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        if request.url.path.startswith(tuple(self.no_store_paths)):
            response.headers.update(NO_STORE_HEADERS)
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track and propagate a unique request ID for each request.
    Adds X-Request-ID to response headers and attaches to request.state.
    """
    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
