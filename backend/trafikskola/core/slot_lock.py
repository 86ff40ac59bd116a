# backend/trafikskola/core/slot_lock.py
"""
Distributed lock serializing booking creation per date and teacher.

The conflict check and the insert must not interleave across requests for
the same slot. A Redis ``SET NX EX`` key guards that window; when Redis is
unavailable the lock fails open and the re-check inside the booking
transaction is the remaining guard.
"""

from contextlib import contextmanager
from datetime import date
import logging
import time
from typing import Iterator, Optional

from ..monitoring.prometheus_metrics import prometheus_metrics
from .redis import get_sync_redis

logger = logging.getLogger(__name__)


def slot_lock_key(booking_date: date, teacher_id: Optional[str]) -> str:
    return f"trafikskola:lock:slot:{booking_date.isoformat()}:{teacher_id or 'any'}"


def acquire_slot_lock(
    booking_date: date,
    teacher_id: Optional[str],
    *,
    ttl_s: int = 30,
    wait_s: float = 2.0,
    poll_s: float = 0.05,
) -> bool:
    """Try to take the lock, polling for up to ``wait_s`` seconds."""
    client = get_sync_redis()
    key = slot_lock_key(booking_date, teacher_id)
    if client is None:
        prometheus_metrics.record_slot_lock("acquire", "redis_unavailable")
        return True

    deadline = time.monotonic() + wait_s
    try:
        while True:
            if client.set(key, str(time.time()), nx=True, ex=ttl_s):
                prometheus_metrics.record_slot_lock("acquire", "success")
                return True
            if time.monotonic() >= deadline:
                prometheus_metrics.record_slot_lock("acquire", "blocked")
                return False
            time.sleep(poll_s)
    except Exception as exc:
        prometheus_metrics.record_slot_lock("acquire", "error")
        logger.warning(
            "slot_lock_acquire_failed",
            extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
        )
        return True


def release_slot_lock(booking_date: date, teacher_id: Optional[str]) -> None:
    client = get_sync_redis()
    if client is None:
        return
    key = slot_lock_key(booking_date, teacher_id)
    try:
        client.delete(key)
        prometheus_metrics.record_slot_lock("release", "success")
    except Exception as exc:
        prometheus_metrics.record_slot_lock("release", "error")
        logger.warning(
            "slot_lock_release_failed",
            extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def slot_lock(
    booking_date: date, teacher_id: Optional[str], ttl_s: int = 30
) -> Iterator[bool]:
    acquired = acquire_slot_lock(booking_date, teacher_id, ttl_s=ttl_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_slot_lock(booking_date, teacher_id)
