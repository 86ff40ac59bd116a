# backend/trafikskola/services/notification_service.py
"""
Notification dispatch boundary.

Booking and payment flows emit ``trigger + context`` events here. Rendering
templates and delivering email/SMS belongs to an external collaborator
registered as a ``NotificationSender``; without one, events are only logged
and kept in ``dispatched`` (used by tests and the local dev server).

A failed delivery never fails the booking operation that triggered it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
import logging
import time
from typing import Any, Callable, Dict, List, Optional, ParamSpec, Protocol, TypeVar

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.timezone_utils import utc_now
from .base import BaseService

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class NotificationTrigger:
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    SWISH_PAYMENT_PENDING = "swish_payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_REJECTED = "payment_rejected"
    # Admin: money arrived for a booking that could not be kept
    PAYMENT_REFUND_REQUIRED = "payment_refund_required"
    GUEST_ACCOUNT_CREATED = "guest_account_created"
    BOOKING_CHECKOUT_CREATED = "booking_checkout_created"

    ALL = frozenset(
        {
            BOOKING_CONFIRMED,
            BOOKING_CANCELLED,
            SWISH_PAYMENT_PENDING,
            PAYMENT_CONFIRMED,
            PAYMENT_REJECTED,
            PAYMENT_REFUND_REQUIRED,
            GUEST_ACCOUNT_CREATED,
            BOOKING_CHECKOUT_CREATED,
        }
    )


class NotificationSender(Protocol):
    def send(self, trigger: str, context: Dict[str, Any]) -> None:
        ...


@dataclass
class DispatchedNotification:
    trigger: str
    context: Dict[str, Any]
    dispatched_at: datetime = field(default_factory=utc_now)
    delivered: bool = True


def retry(
    max_attempts: int = 3, backoff_seconds: float = 1.0, sleep: Callable[[float], None] = time.sleep
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator for retrying failed operations with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        backoff_seconds: Initial backoff time in seconds

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    if attempt < max_attempts - 1:
                        wait_time = backoff_seconds * (2**attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: "
                            f"{str(e)}. Retrying in {wait_time}s..."
                        )
                        sleep(wait_time)
                    else:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}: {str(e)}"
                        )

            if last_exception is not None:
                raise last_exception
            raise RuntimeError("Retry failed without capturing exception")

        return wrapper

    return decorator


class NotificationService(BaseService):
    """Routes notification triggers to the configured sender."""

    def __init__(
        self,
        db: Optional[Session] = None,
        sender: Optional[NotificationSender] = None,
        *,
        backoff_seconds: float = 1.0,
    ):
        super().__init__(db)  # type: ignore[arg-type]
        self.sender = sender
        self.backoff_seconds = backoff_seconds
        self.dispatched: List[DispatchedNotification] = []

    @BaseService.measure_operation("dispatch_notification")
    def dispatch(self, trigger: str, context: Dict[str, Any]) -> bool:
        """
        Emit a notification event.

        Returns False when delivery failed after retries; the failure is
        logged and never raised to the caller.
        """
        if trigger not in NotificationTrigger.ALL:
            self.logger.warning("Unknown notification trigger", extra={"trigger": trigger})

        payload = {"admin_email": settings.admin_email, **context}
        record = DispatchedNotification(trigger=trigger, context=payload)
        self.dispatched.append(record)

        if self.sender is None:
            self.log_operation("notification_dispatched", trigger=trigger, sender="log")
            return True

        @retry(max_attempts=3, backoff_seconds=self.backoff_seconds)
        def _send() -> None:
            self.sender.send(trigger, payload)  # type: ignore[union-attr]

        try:
            _send()
        except Exception as e:
            record.delivered = False
            self.logger.error(
                f"Failed to deliver {trigger} notification: {str(e)}",
                extra={"trigger": trigger, "booking_id": context.get("booking_id")},
            )
            return False

        self.log_operation("notification_dispatched", trigger=trigger)
        return True

    def triggers(self) -> List[str]:
        return [n.trigger for n in self.dispatched]
