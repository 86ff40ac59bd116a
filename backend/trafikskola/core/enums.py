# backend/trafikskola/core/enums.py
"""
Core enums for the booking domain.

Values are the strings persisted in the database and exchanged with clients.
"""

from enum import Enum


class RoleName(str, Enum):
    """User roles. Admins and teachers may book on behalf of a student."""

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class BookingStatus(str, Enum):
    """Booking lifecycle states."""

    TEMP = "temp"
    ON_HOLD = "on_hold"
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @classmethod
    def holds(cls) -> tuple["BookingStatus", ...]:
        """Provisional states that expire after the hold window."""
        return (cls.TEMP, cls.ON_HOLD)


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDITS = "credits"
    SWISH = "swish"
    PAY_AT_LOCATION = "pay_at_location"
    QLIRO = "qliro"
    TEMP = "temp"


class CreditType(str, Enum):
    LESSON = "lesson"
    HANDLEDAR = "handledar"


class TransmissionType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class GatewayEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class PaymentOrderStatus(str, Enum):
    """Local status of a gateway checkout order."""

    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    FAILED = "failed"
    EXPIRED = "expired"


class RejectionReason(str, Enum):
    """Machine-checkable reason codes carried by booking rejections."""

    CONFLICT = "conflict"
    MISSING_FIELDS = "missing-fields"
    DATE_BLOCKED = "date-blocked"
    CAPACITY_EXCEEDED = "capacity-exceeded"
    EMAIL_EXISTS = "email-exists"
    SESSION_SELECTION_REQUIRED = "session-selection-required"
    INSUFFICIENT_CREDITS = "insufficient-credits"
    NOT_FOUND = "not-found"
    NOT_AVAILABLE = "not-available"
    UNAUTHORIZED = "unauthorized"
