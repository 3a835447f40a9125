import math
from time import time
from typing import Callable, Dict, Optional, Tuple
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
import logging

import redis

from config.settings import settings

logger = logging.getLogger(__name__)

_redis_client = None
_redis_available = False

if settings.redis_url:
    try:
        # Parse Redis URL (supports redis:// and redis://:password@host:port)
        _redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        # Test connection
        _redis_client.ping()
        _redis_available = True
        logger.info("Redis connected successfully for rate limiting")
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory rate limiting.")
        _redis_client = None
        _redis_available = False
else:
    logger.info("REDIS_URL not set. Using in-memory rate limiting.")


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limiter using Redis (with fallback to in-memory).
    Each client ip gets max_requests per window_seconds on every path.
    """

    def __init__(
        self,
        app,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        key_prefix: str = "global",
        redis_client=None,
        clock: Callable[[], float] = time,
    ):
        super().__init__(app)
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self.key_prefix = key_prefix
        self.clock = clock
        self._redis = redis_client if redis_client is not None else (_redis_client if _redis_available else None)
        # Fallback: in-memory storage (key -> (count, reset_at_ts))
        self._buckets: Dict[str, Tuple[int, float]] = {}

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff and xff.strip():
            # Take first IP in the list
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _get_key(self, request: Request) -> str:
        return f"rate_limit:{self.key_prefix}:{request.url.path}:{self._get_client_ip(request)}"

    def _hit_redis(self, key: str, now: float) -> Optional[Tuple[int, float]]:
        """
        Count a hit in Redis. Returns (count, reset_at) or None when Redis failed.
        The first hit of a window sets the key expiry.
        """
        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.expire(key, self.window_seconds)
                ttl = self.window_seconds
            else:
                ttl = self._redis.ttl(key)
                if ttl is None or ttl < 0:
                    # Key lost its expiry; start the window again
                    self._redis.expire(key, self.window_seconds)
                    ttl = self.window_seconds
            return count, now + ttl
        except redis.RedisError as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _cleanup_buckets(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            del self._buckets[key]

    def _hit_memory(self, key: str, now: float) -> Tuple[int, float]:
        self._cleanup_buckets(now)
        count, reset_at = self._buckets.get(key, (0, now + self.window_seconds))
        count += 1
        self._buckets[key] = (count, reset_at)
        return count, reset_at

    def _apply_headers(self, response: Response, remaining: int, reset_at: float) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(math.ceil(reset_at))

    async def dispatch(self, request: Request, call_next) -> Response:
        key = self._get_key(request)
        now = self.clock()

        hit = self._hit_redis(key, now) if self._redis is not None else None
        if hit is None:
            hit = self._hit_memory(key, now)
        count, reset_at = hit

        if count > self.max_requests:
            retry_after = max(1, math.ceil(reset_at - now))
            response = JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "data": {},
                    "error": "rate_limited",
                    "message": "Too many requests. Try again shortly.",
                },
            )
            response.headers["Retry-After"] = str(retry_after)
            self._apply_headers(response, 0, reset_at)
            return response

        response = await call_next(request)
        self._apply_headers(response, self.max_requests - count, reset_at)
        return response
