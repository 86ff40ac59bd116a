# backend/trafikskola/middleware/rate_limiter.py
"""
Rate limiting for booking endpoints.

Sliding window per client identifier kept in a Redis sorted set. When Redis
is not configured or errors out, requests are allowed and a warning is
logged.
"""

from enum import Enum
from functools import wraps
import hashlib
import inspect
import logging
import time
from typing import Any, Callable, Optional, Tuple

from fastapi import HTTPException, Request, Response, status
import redis

from ..core.config import settings
from ..core.redis import get_sync_redis

logger = logging.getLogger(__name__)

_TIME_MULTIPLIERS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}


class RateLimitKeyType(Enum):
    """Types of keys for rate limiting."""

    IP = "ip"
    USER = "user"
    ENDPOINT = "endpoint"


def parse_rate(rate_string: str) -> Tuple[int, int]:
    """``"10/minute"`` -> ``(10, 60)``; plural units are accepted."""
    parts = rate_string.split("/")
    if len(parts) != 2:
        raise ValueError(f"Invalid rate string: {rate_string}")
    limit = int(parts[0])
    time_unit = parts[1].strip().lower()
    for unit, multiplier in _TIME_MULTIPLIERS.items():
        if time_unit.startswith(unit):
            return limit, multiplier
    raise ValueError(f"Unknown time unit: {time_unit}")


class RateLimiter:
    """
    Core rate limiting logic using sliding window algorithm.

    Args:
        redis_client: Redis client (resolved lazily from settings if not provided)
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client if redis_client is not None else get_sync_redis()
        self.enabled = getattr(settings, "rate_limit_enabled", True)

    def _get_cache_key(self, identifier: str, window_name: str) -> str:
        # Hash long identifiers to keep keys reasonable
        if len(identifier) > 32:
            identifier = hashlib.md5(identifier.encode()).hexdigest()[:16]
        return f"rate_limit:{window_name}:{identifier}"

    def check_rate_limit(
        self, identifier: str, limit: int, window_seconds: int, window_name: Optional[str] = None
    ) -> Tuple[bool, int, int]:
        """
        Check if request is within rate limit using sliding window.

        Returns:
            Tuple of (allowed, requests_made, retry_after_seconds)
        """
        if not self.enabled:
            return True, 0, 0

        if self.redis is None:
            logger.warning("Rate limiting bypassed - redis unavailable")
            return True, 0, 0

        window_name = window_name or f"{limit}per{window_seconds}s"
        cache_key = self._get_cache_key(identifier, window_name)

        try:
            pipe = self.redis.pipeline()
            now = time.time()
            window_start = now - window_seconds

            pipe.zremrangebyscore(cache_key, 0, window_start)
            pipe.zcard(cache_key)
            pipe.zadd(cache_key, {str(now): now})
            pipe.expire(cache_key, window_seconds + 60)
            results = pipe.execute()

            # results[1] is the count before adding current request
            requests_in_window = int(results[1])

            if requests_in_window >= limit:
                oldest = self.redis.zrange(cache_key, 0, 0, withscores=True)
                if oldest:
                    retry_after = max(1, int(oldest[0][1] + window_seconds - now))
                else:
                    retry_after = window_seconds

                # The rejected request does not count against the window
                self.redis.zrem(cache_key, str(now))
                return False, requests_in_window, retry_after

            return True, requests_in_window + 1, 0

        except redis.RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            return True, 0, 0

    def get_remaining_requests(
        self, identifier: str, limit: int, window_seconds: int, window_name: Optional[str] = None
    ) -> int:
        if not self.enabled or self.redis is None:
            return limit

        window_name = window_name or f"{limit}per{window_seconds}s"
        cache_key = self._get_cache_key(identifier, window_name)
        try:
            self.redis.zremrangebyscore(cache_key, 0, time.time() - window_seconds)
            return max(0, limit - int(self.redis.zcard(cache_key)))
        except redis.RedisError as e:
            logger.error(f"Failed to get remaining requests: {e}")
            return limit


def get_client_identifier(
    request: Request, key_type: RateLimitKeyType, kwargs: dict
) -> Optional[str]:
    if key_type == RateLimitKeyType.IP:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Take the first IP in the chain
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    if key_type == RateLimitKeyType.USER:
        user = kwargs.get("current_user")
        if user is not None and hasattr(user, "id"):
            return f"user_{user.id}"
        return None

    return f"endpoint_{request.url.path}"


def rate_limit(
    rate_string: str,
    key_type: RateLimitKeyType = RateLimitKeyType.IP,
    error_message: Optional[str] = None,
    limiter_factory: Callable[[], RateLimiter] = RateLimiter,
):
    """
    Decorator for applying rate limits to specific endpoints.

    The endpoint must accept a ``request: Request`` parameter.

    Example:
        @rate_limit("10/minute", key_type=RateLimitKeyType.IP)
        def create_booking(request: Request, ...):
            ...
    """
    limit, window_seconds = parse_rate(rate_string)

    def decorator(func: Callable) -> Callable:
        window_name = f"{func.__name__}_{rate_string.replace('/', 'per')}"

        def _find_request(args: tuple, kwargs: dict) -> Optional[Request]:
            for arg in args:
                if isinstance(arg, Request):
                    return arg
            request = kwargs.get("request")
            return request if isinstance(request, Request) else None

        def _enforce(args: tuple, kwargs: dict) -> Optional[Tuple[RateLimiter, str]]:
            request = _find_request(args, kwargs)
            if request is None:
                return None
            identifier = get_client_identifier(request, key_type, kwargs)
            if not identifier:
                return None

            rate_limiter = limiter_factory()
            allowed, _, retry_after = rate_limiter.check_rate_limit(
                identifier=identifier,
                limit=limit,
                window_seconds=window_seconds,
                window_name=window_name,
            )
            if not allowed:
                logger.info(
                    "Rate limit exceeded",
                    extra={"endpoint": func.__name__, "retry_after": retry_after},
                )
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={
                        "error": error_message
                        or f"Rate limit exceeded. Try again in {retry_after} seconds.",
                        "code": "RATE_LIMIT_EXCEEDED",
                        "retry_after": retry_after,
                    },
                    headers={
                        "Retry-After": str(retry_after),
                        "X-RateLimit-Limit": str(limit),
                        "X-RateLimit-Remaining": "0",
                        "X-RateLimit-Reset": str(int(time.time()) + retry_after),
                    },
                )
            return rate_limiter, identifier

        def _decorate_response(response: Any, state: Optional[Tuple[RateLimiter, str]]) -> Any:
            if state is not None and isinstance(response, Response):
                rate_limiter, identifier = state
                remaining = rate_limiter.get_remaining_requests(
                    identifier=identifier,
                    limit=limit,
                    window_seconds=window_seconds,
                    window_name=window_name,
                )
                response.headers["X-RateLimit-Limit"] = str(limit)
                response.headers["X-RateLimit-Remaining"] = str(remaining)
                response.headers["X-RateLimit-Reset"] = str(int(time.time()) + window_seconds)
            return response

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                state = _enforce(args, kwargs)
                return _decorate_response(await func(*args, **kwargs), state)

            wrapper = async_wrapper
        else:

            @wraps(func)
            def sync_wrapper(*args, **kwargs):
                state = _enforce(args, kwargs)
                return _decorate_response(func(*args, **kwargs), state)

            wrapper = sync_wrapper

        # Preserve the original function signature for FastAPI dependency injection
        wrapper.__signature__ = inspect.signature(func)  # type: ignore[attr-defined]
        return wrapper

    return decorator
