# backend/trafikskola/schemas/booking.py
"""
Booking request and response schemas.

Create requests are a discriminated union on ``category``. Business-required
fields are optional at this layer so that the booking service can answer
with its own ``missing-fields`` reason code instead of a generic 422.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import Field, RootModel

from ..core.enums import PaymentMethod, TransmissionType
from ._strict_base import StrictModel, StrictRequestModel


class _BookingRequestBase(StrictRequestModel):
    payment_method: Optional[PaymentMethod] = None
    total_price: Optional[Decimal] = Field(default=None, ge=0)

    # Privileged (admin/teacher) bookings on behalf of a student
    student_id: Optional[str] = None
    already_paid: bool = False

    guest_name: Optional[str] = Field(default=None, max_length=255)
    guest_email: Optional[str] = Field(default=None, max_length=255)
    guest_phone: Optional[str] = Field(default=None, max_length=30)

    return_url: Optional[str] = None


class LessonBookingRequest(_BookingRequestBase):
    category: Literal["lesson"] = "lesson"
    lesson_type_id: Optional[str] = None
    scheduled_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    transmission_type: Optional[TransmissionType] = None
    car_id: Optional[str] = None


class HandledarBookingRequest(_BookingRequestBase):
    category: Literal["handledar"]
    session_id: Optional[str] = None
    supervisor_name: Optional[str] = None


BookingCreateRequest = Annotated[
    Union[LessonBookingRequest, HandledarBookingRequest],
    Field(discriminator="category"),
]


class BookingCreatePayload(RootModel[BookingCreateRequest]):
    """Request body wrapper so the union can be used as a FastAPI body."""


class ConfirmSwishRequest(StrictRequestModel):
    booking_id: str


class PayWithCreditsRequest(StrictRequestModel):
    booking_id: str


class CancelBookingRequest(StrictRequestModel):
    soft_delete: bool = False


class BookingCreateResponse(StrictModel):
    booking: Dict[str, Any]
    message: str
    checkout_url: Optional[str] = None
    used_fallback_teacher: bool = False


class BookingActionResponse(StrictModel):
    booking: Dict[str, Any]
    message: str
