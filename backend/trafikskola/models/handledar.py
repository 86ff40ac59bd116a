# backend/trafikskola/models/handledar.py
"""
Handledar (supervisor course) sessions.

A session is a multi-participant course instance with a fixed capacity;
each HandledarBooking takes one seat. ``current_participants`` is the seat
counter maintained by the booking flow and released by the cleanup sweep.
"""

from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Time,
)
import ulid

from ..core.enums import BookingStatus, PaymentStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class HandledarSession(Base):
    __tablename__ = "handledar_sessions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    title = Column(String(255), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    max_participants = Column(Integer, nullable=False, default=2)
    current_participants = Column(Integer, nullable=False, default=0)
    price_per_participant = Column(Numeric(10, 2), nullable=False, default=0)
    teacher_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("current_participants >= 0", name="ck_handledar_participants_floor"),
    )

    @property
    def has_capacity(self) -> bool:
        return (self.current_participants or 0) < self.max_participants


class HandledarBooking(Base):
    __tablename__ = "handledar_bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    session_id = Column(String(26), ForeignKey("handledar_sessions.id"), nullable=False, index=True)
    student_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    supervisor_name = Column(String(255), nullable=False)
    supervisor_email = Column(String(255), nullable=True)
    supervisor_phone = Column(String(30), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    payment_method = Column(String(30), nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "studentId": self.student_id,
            "supervisorName": self.supervisor_name,
            "supervisorEmail": self.supervisor_email,
            "supervisorPhone": self.supervisor_phone,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentMethod": self.payment_method,
            "price": float(self.price) if self.price is not None else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
