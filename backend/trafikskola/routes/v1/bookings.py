# backend/trafikskola/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    POST / - Create a booking (lesson or handledar session)
    POST /{booking_id}/hold - Reserve a temporary booking for manual payment
    POST /confirm-swish - Customer reports a Swish payment
    POST /pay-with-credits - Settle an unpaid booking with a credit
    POST /{booking_id}/cancel - Cancel a lesson and return its credit
    GET /admin-confirm - Admin confirms or rejects a pending Swish payment
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from ...api.dependencies import get_booking_service
from ...auth import get_current_user, get_current_user_optional, require_admin
from ...core.config import settings
from ...core.exceptions import DomainException
from ...middleware.rate_limiter import RateLimitKeyType, rate_limit
from ...models.user import User
from ...schemas.booking import (
    BookingActionResponse,
    BookingCreatePayload,
    BookingCreateResponse,
    CancelBookingRequest,
    ConfirmSwishRequest,
    PayWithCreditsRequest,
)
from ...services.booking_service import BookingService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    raise exc.to_http_exception()


@router.post("", response_model=BookingCreateResponse, status_code=status.HTTP_201_CREATED)
@rate_limit(settings.booking_create_rate, key_type=RateLimitKeyType.IP)
def create_booking(
    request: Request,
    payload: BookingCreatePayload,
    current_user: Optional[User] = Depends(get_current_user_optional),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingCreateResponse:
    """
    Create a booking.

    Guests and logged-in students book for themselves; admins and teachers
    may pass ``studentId`` to book on a student's behalf.
    """
    try:
        result = booking_service.create(payload.root, current_user)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingCreateResponse(
        booking=result.booking.to_dict(),
        message=result.message,
        checkout_url=result.checkout_url,
        used_fallback_teacher=result.used_fallback_teacher,
    )


@router.post("/{booking_id}/hold", response_model=BookingActionResponse)
def hold_booking(
    booking_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        booking = booking_service.hold_booking(booking_id, current_user)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingActionResponse(booking=booking.to_dict(), message="Booking reserved")


@router.post("/confirm-swish", response_model=BookingActionResponse)
def confirm_swish(
    payload: ConfirmSwishRequest,
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        booking = booking_service.confirm_swish(payload.booking_id)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingActionResponse(
        booking=booking.to_dict(),
        message="Payment registered. The school will confirm it shortly.",
    )


@router.post("/pay-with-credits", response_model=BookingActionResponse)
def pay_with_credits(
    payload: PayWithCreditsRequest,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        booking = booking_service.pay_with_credits(payload.booking_id, current_user)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingActionResponse(booking=booking.to_dict(), message="Booking paid with credits")


@router.get("/admin-confirm", response_model=BookingActionResponse)
def admin_confirm(
    booking_id: str = Query(..., alias="bookingId"),
    action: str = Query(..., pattern="^(confirm|reject)$"),
    admin: User = Depends(require_admin),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        booking = booking_service.apply_admin_action(booking_id, action)
    except DomainException as e:
        handle_domain_exception(e)
    logger.info(
        "Admin payment action applied",
        extra={"booking_id": booking_id, "action": action, "admin_id": admin.id},
    )
    message = "Payment confirmed" if action == "confirm" else "Payment rejected"
    return BookingActionResponse(booking=booking.to_dict(), message=message)


@router.post("/{booking_id}/cancel", response_model=BookingActionResponse)
def cancel_booking(
    booking_id: str,
    payload: Optional[CancelBookingRequest] = None,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    soft_delete = payload.soft_delete if payload else False
    try:
        booking = booking_service.cancel_booking(booking_id, current_user, soft_delete=soft_delete)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingActionResponse(booking=booking.to_dict(), message="Booking cancelled")
