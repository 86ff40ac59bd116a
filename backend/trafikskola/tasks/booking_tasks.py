# backend/trafikskola/tasks/booking_tasks.py
"""
Housekeeping tasks for bookings and checkout orders.

Each task owns its own session; the services commit their own
transactions.
"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import SessionLocal
from ..services.booking_service import BookingService
from ..services.gateway_settings import GatewaySettingsProvider
from ..services.qliro_service import QliroService
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(  # type: ignore[misc]
    bind=True, max_retries=3, name="trafikskola.tasks.booking_tasks.expire_stale_holds"
)
def expire_stale_holds(self: Any) -> Dict[str, int]:
    """Delete or cancel temp/on_hold bookings older than the hold window."""
    db: Session = SessionLocal()
    try:
        counts = BookingService(db).expire_stale_holds()
        if any(counts.values()):
            logger.info("Expired stale holds", extra=counts)
        return counts
    except Exception as exc:
        logger.error(f"Hold sweep failed: {str(exc)}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@celery_app.task(  # type: ignore[misc]
    bind=True, max_retries=3, name="trafikskola.tasks.booking_tasks.expire_stale_orders"
)
def expire_stale_orders(self: Any) -> Dict[str, int]:
    """Mark checkout orders still pending past their expiry as expired."""
    db: Session = SessionLocal()
    try:
        provider = GatewaySettingsProvider.from_session_factory(
            SessionLocal, ttl_seconds=settings.gateway_settings_cache_ttl_seconds
        )
        expired = QliroService(db, provider).expire_stale_orders()
        return {"expired": expired}
    except Exception as exc:
        logger.error(f"Order expiry sweep failed: {str(exc)}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
