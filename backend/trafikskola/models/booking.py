# backend/trafikskola/models/booking.py
"""
Booking model.

A booking is one scheduled lesson instance. It starts life as a provisional
``temp`` hold and is promoted through the payment state machine owned by
BookingService. ``temp``/``on_hold`` rows stop blocking their slot once they
are older than the hold window, even before the cleanup sweep deletes them.
"""

import logging
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Time,
)
import ulid

from ..core.enums import BookingStatus, PaymentStatus
from ..core.timezone_utils import utc_now
from ..database import Base

logger = logging.getLogger(__name__)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    user_id = Column(String(26), ForeignKey("users.id"), nullable=True, index=True)
    lesson_type_id = Column(String(26), ForeignKey("lesson_types.id"), nullable=False)
    teacher_id = Column(String(26), ForeignKey("users.id"), nullable=True, index=True)
    car_id = Column(String(26), nullable=True)

    scheduled_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    transmission_type = Column(String(20), nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.TEMP.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    payment_method = Column(String(30), nullable=True)
    total_price = Column(Numeric(10, 2), nullable=False, default=0)

    is_guest_booking = Column(Boolean, nullable=False, default=False)
    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(30), nullable=True)

    # Human-visible reference quoted when paying externally (Swish message)
    swish_uuid = Column(String(64), nullable=True, index=True)
    invoice_number = Column(String(50), nullable=True)

    is_completed = Column(Boolean, nullable=False, default=False)
    feedback_ready = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_bookings_date_teacher", "scheduled_date", "teacher_id"),
        CheckConstraint("start_time < end_time", name="ck_bookings_time_order"),
        CheckConstraint("duration_minutes > 0", name="ck_bookings_duration_positive"),
        CheckConstraint(
            "status IN ('temp', 'on_hold', 'booked', 'confirmed', 'cancelled')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'paid', 'failed', 'refunded')",
            name="ck_bookings_payment_status",
        ),
    )

    @property
    def is_hold(self) -> bool:
        return self.status in (BookingStatus.TEMP.value, BookingStatus.ON_HOLD.value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED.value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: {self.scheduled_date} {self.start_time}-{self.end_time} "
            f"teacher={self.teacher_id} status={self.status}/{self.payment_status}>"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "lessonTypeId": self.lesson_type_id,
            "teacherId": self.teacher_id,
            "carId": self.car_id,
            "scheduledDate": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "startTime": self.start_time.strftime("%H:%M") if self.start_time else None,
            "endTime": self.end_time.strftime("%H:%M") if self.end_time else None,
            "durationMinutes": self.duration_minutes,
            "transmissionType": self.transmission_type,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentMethod": self.payment_method,
            "totalPrice": float(self.total_price) if self.total_price is not None else None,
            "isGuestBooking": self.is_guest_booking,
            "guestName": self.guest_name,
            "guestEmail": self.guest_email,
            "guestPhone": self.guest_phone,
            "swishUuid": self.swish_uuid,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
