# backend/trafikskola/models/__init__.py
"""
Database models for the booking backend.

Importing this package registers every table on ``Base.metadata``.
"""

from .availability import BlockedSlot, TeacherAvailability
from .booking import Booking
from .credit import UserCredit
from .handledar import HandledarBooking, HandledarSession
from .lesson_type import LessonType
from .package import Package, PackageContent, PackagePurchase
from .payment_order import QliroOrder
from .site_setting import SiteSetting
from .user import User

__all__ = [
    "BlockedSlot",
    "Booking",
    "HandledarBooking",
    "HandledarSession",
    "LessonType",
    "Package",
    "PackageContent",
    "PackagePurchase",
    "QliroOrder",
    "SiteSetting",
    "TeacherAvailability",
    "User",
    "UserCredit",
]
