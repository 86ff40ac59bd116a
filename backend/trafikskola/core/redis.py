# backend/trafikskola/core/redis.py
"""
Shared sync Redis client for rate limiting and slot locks.

Callers must treat ``None`` as "Redis unavailable" and degrade gracefully.
"""

import logging
import threading
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from .config import settings

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    if not settings.redis_url:
        return None
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
            )
            client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("sync_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def reset_sync_redis() -> None:
    """Drop the cached client (used after configuration changes and in tests)."""
    global _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        _SYNC_REDIS = None
