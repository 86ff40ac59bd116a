# backend/trafikskola/services/payment_status_service.py
"""
Applies Qliro status notifications to local records.

Two entry points:

- ``apply_status_push``: the checkout/order-management push, authenticated
  by the per-order callback token embedded in the push URL;
- ``apply_webhook``: a signed webhook, authenticated by HMAC over the raw
  body before anything is read from it.

Both are idempotent: replaying a push never pays, notifies or grants
credits twice.

A payment that lands after its hold expired only confirms the booking if
the slot (or handledar seat) is still free; otherwise the money is recorded
on the cancelled booking and the admin is asked to refund it.
"""

from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Iterator, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    BookingStatus,
    CreditType,
    PaymentMethod,
    PaymentOrderStatus,
    PaymentStatus,
    RejectionReason,
)
from ..core.exceptions import NotFoundException, UnauthorizedException
from ..core.slot_lock import slot_lock
from ..core.timezone_utils import utc_now
from ..models.booking import Booking
from ..models.handledar import HandledarBooking
from ..models.package import PackagePurchase
from ..models.payment_order import QliroOrder
from ..repositories.factory import RepositoryFactory
from ..schemas.payments import QliroStatusPush
from .base import BaseService
from .credit_service import CreditService
from .notification_service import NotificationService, NotificationTrigger
from .qliro_service import QliroService, map_remote_status
from .time_ranges import any_booking_overlaps, is_hold_expired

logger = logging.getLogger(__name__)

# Statuses that would confirm the booking they belong to
_SETTLING = (PaymentOrderStatus.COMPLETED, PaymentOrderStatus.ON_HOLD)


class PaymentStatusService(BaseService):
    def __init__(
        self,
        db: Session,
        qliro_service: QliroService,
        *,
        notification_service: Optional[NotificationService] = None,
    ):
        super().__init__(db)
        self.qliro_service = qliro_service
        self.notification_service = notification_service or NotificationService(db)
        self.credit_service = CreditService(db)
        self.order_repository = RepositoryFactory.create_qliro_order_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.handledar_repository = RepositoryFactory.create_handledar_repository(db)
        self.package_repository = RepositoryFactory.create_package_repository(db)

    @BaseService.measure_operation("apply_status_push")
    def apply_status_push(self, token: str, push: QliroStatusPush) -> PaymentOrderStatus:
        order = self.qliro_service.find_order_for_callback(token)
        if order is None:
            raise UnauthorizedException(
                "Invalid or expired callback token", code=RejectionReason.UNAUTHORIZED.value
            )
        if push.order_id is not None and str(push.order_id) != order.qliro_order_id:
            self.logger.warning(
                "Status push order id does not match callback token",
                extra={"order_id": order.id, "pushed_order_id": str(push.order_id)},
            )
            raise UnauthorizedException(
                "Callback token does not belong to this order",
                code=RejectionReason.UNAUTHORIZED.value,
            )
        return self._apply(order, push.status)

    @BaseService.measure_operation("apply_webhook")
    def apply_webhook(
        self, signature: Optional[str], raw_body: Union[bytes, str], push: QliroStatusPush
    ) -> PaymentOrderStatus:
        if not self.qliro_service.verify_webhook_signature(signature, raw_body):
            self.logger.warning("Rejected Qliro webhook with invalid signature")
            raise UnauthorizedException(
                "Invalid webhook signature", code=RejectionReason.UNAUTHORIZED.value
            )

        order = None
        if push.order_id is not None:
            order = self.order_repository.get_by_remote_id(str(push.order_id))
        if order is None and push.merchant_reference:
            order = self.order_repository.get_by_merchant_reference(push.merchant_reference)
        if order is None:
            raise NotFoundException(
                "Payment order not found",
                code=RejectionReason.NOT_FOUND.value,
                details={"order_id": push.order_id, "merchant_reference": push.merchant_reference},
            )
        return self._apply(order, push.status)

    def _apply(self, order: QliroOrder, remote_status: str) -> PaymentOrderStatus:
        status = map_remote_status(remote_status)
        now = utc_now()
        triggers: list[tuple[str, dict]] = []

        with self._lapsed_hold_lock(order, status, now) as slot_locked:
            with self.transaction():
                order.status = status.value
                order.last_status_check = now
                if order.booking_id:
                    booking = self.booking_repository.get_by_id(order.booking_id)
                    if booking is not None:
                        triggers = self._apply_to_booking(booking, status, now, slot_locked)
                elif order.handledar_booking_id:
                    hb = self.handledar_repository.get_booking(order.handledar_booking_id)
                    if hb is not None:
                        triggers = self._apply_to_handledar(hb, status)
                elif order.package_purchase_id:
                    purchase = self.package_repository.get_purchase(order.package_purchase_id)
                    if purchase is not None:
                        self._apply_to_package(purchase, order, status)

        for trigger, context in triggers:
            self.notification_service.dispatch(trigger, context)
        self.log_operation(
            "apply_payment_status",
            order_id=order.id,
            remote_status=remote_status,
            status=status.value,
        )
        return status

    @contextmanager
    def _lapsed_hold_lock(
        self, order: QliroOrder, status: PaymentOrderStatus, now: datetime
    ) -> Iterator[bool]:
        """
        Take the slot lock when a payment would confirm a lesson hold that
        has outlived the hold window; yields whether the lock is held.
        """
        booking = None
        if order.booking_id and status in _SETTLING:
            booking = self.booking_repository.get_by_id(order.booking_id)
        if booking is None or not (booking.is_hold and is_hold_expired(booking, now)):
            yield True
            return
        with slot_lock(
            booking.scheduled_date, None, ttl_s=settings.slot_lock_ttl_seconds
        ) as acquired:
            yield acquired

    def _slot_still_free(self, booking: Booking, now: datetime) -> bool:
        others = [
            b
            for b in self.booking_repository.get_bookings_for_date(booking.scheduled_date)
            if b.id != booking.id
        ]
        return not any_booking_overlaps(booking.start_time, booking.end_time, others, False, now=now)

    def _apply_to_booking(
        self, booking: Booking, status: PaymentOrderStatus, now: datetime, slot_locked: bool
    ) -> list:
        if booking.payment_status == PaymentStatus.PAID.value:
            return []

        if status in _SETTLING and booking.is_hold and is_hold_expired(booking, now):
            if not slot_locked or not self._slot_still_free(booking, now):
                return self._drop_lapsed_hold(booking, status)

        if status == PaymentOrderStatus.COMPLETED:
            booking.payment_status = PaymentStatus.PAID.value
            booking.payment_method = PaymentMethod.QLIRO.value
            if booking.is_cancelled or booking.is_deleted:
                # Paid after the hold lapsed; money is recorded, slot is not reinstated
                self.logger.warning(
                    "Payment completed for a cancelled booking",
                    extra={"booking_id": booking.id},
                )
                return [self._refund_notice(booking)]
            booking.status = BookingStatus.CONFIRMED.value
            return [(NotificationTrigger.PAYMENT_CONFIRMED, self._context(booking))]

        if status == PaymentOrderStatus.ON_HOLD:
            if not booking.is_cancelled:
                booking.status = BookingStatus.CONFIRMED.value
            booking.payment_status = PaymentStatus.PENDING.value
            return []

        if status == PaymentOrderStatus.FAILED and booking.payment_status != PaymentStatus.FAILED.value:
            booking.payment_status = PaymentStatus.FAILED.value
            if booking.is_hold:
                booking.status = BookingStatus.CANCELLED.value
            return [(NotificationTrigger.PAYMENT_REJECTED, self._context(booking))]
        return []

    def _drop_lapsed_hold(self, booking: Booking, status: PaymentOrderStatus) -> list:
        """The hold expired and its slot went to someone else: keep the money, not the slot."""
        booking.status = BookingStatus.CANCELLED.value
        booking.payment_method = PaymentMethod.QLIRO.value
        self.logger.warning(
            "Payment arrived after the slot was taken; booking cancelled",
            extra={"booking_id": booking.id, "order_status": status.value},
        )
        if status == PaymentOrderStatus.COMPLETED:
            booking.payment_status = PaymentStatus.PAID.value
            return [self._refund_notice(booking)]
        booking.payment_status = PaymentStatus.PENDING.value
        return []

    def _apply_to_handledar(self, hb: HandledarBooking, status: PaymentOrderStatus) -> list:
        if hb.payment_status == PaymentStatus.PAID.value:
            return []

        seat_lost = False
        if status in _SETTLING and hb.status == BookingStatus.CANCELLED.value:
            # The expiry sweep gave the seat back; reclaim it if still free
            seat_lost = not self.handledar_repository.take_seat(hb.session_id)

        if status == PaymentOrderStatus.COMPLETED:
            hb.payment_status = PaymentStatus.PAID.value
            hb.payment_method = PaymentMethod.QLIRO.value
            if seat_lost:
                self.logger.warning(
                    "Payment completed but the handledar session is full",
                    extra={"handledar_booking_id": hb.id, "session_id": hb.session_id},
                )
                return [self._refund_notice(hb)]
            hb.status = BookingStatus.CONFIRMED.value
            return [(NotificationTrigger.PAYMENT_CONFIRMED, self._context(hb))]

        if status == PaymentOrderStatus.ON_HOLD:
            hb.payment_status = PaymentStatus.PENDING.value
            if not seat_lost:
                hb.status = BookingStatus.CONFIRMED.value
            return []

        if status == PaymentOrderStatus.FAILED and hb.status != BookingStatus.CANCELLED.value:
            hb.payment_status = PaymentStatus.FAILED.value
            hb.status = BookingStatus.CANCELLED.value
            self.handledar_repository.release_seat(hb.session_id)
            return [(NotificationTrigger.PAYMENT_REJECTED, self._context(hb))]
        return []

    def _apply_to_package(
        self, purchase: PackagePurchase, order: QliroOrder, status: PaymentOrderStatus
    ) -> None:
        if purchase.payment_status == PaymentStatus.PAID.value:
            return

        if status == PaymentOrderStatus.COMPLETED:
            purchase.payment_status = PaymentStatus.PAID.value
            purchase.payment_method = PaymentMethod.QLIRO.value
            purchase.payment_reference = order.qliro_order_id
            purchase.paid_at = utc_now()
            for content in self.package_repository.get_contents(purchase.package_id):
                self.credit_service.grant_credits(
                    user_id=purchase.user_id,
                    credits=content.credits,
                    lesson_type_id=content.lesson_type_id,
                    credit_type=(
                        CreditType.HANDLEDAR.value
                        if content.content_type == CreditType.HANDLEDAR.value
                        else CreditType.LESSON.value
                    ),
                    package_id=purchase.package_id,
                    use_transaction=False,
                )
        elif status == PaymentOrderStatus.ON_HOLD:
            purchase.payment_status = PaymentStatus.PENDING.value
        elif status == PaymentOrderStatus.FAILED:
            purchase.payment_status = PaymentStatus.FAILED.value

    @staticmethod
    def _context(booking: Union[Booking, HandledarBooking]) -> dict:
        return {"booking_id": booking.id, "booking": booking.to_dict()}

    def _refund_notice(self, booking: Union[Booking, HandledarBooking]) -> tuple[str, dict]:
        return (
            NotificationTrigger.PAYMENT_REFUND_REQUIRED,
            {**self._context(booking), "recipient": settings.admin_email},
        )
