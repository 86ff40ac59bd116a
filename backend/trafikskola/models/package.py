# backend/trafikskola/models/package.py
"""
Lesson packages.

A Package bundles credits (PackageContent rows); a PackagePurchase is paid
through the gateway and, once paid, is turned into UserCredit rows.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
import ulid

from ..core.enums import PaymentStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class Package(Base):
    __tablename__ = "packages"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class PackageContent(Base):
    __tablename__ = "package_contents"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    package_id = Column(String(26), ForeignKey("packages.id"), nullable=False, index=True)
    lesson_type_id = Column(String(26), ForeignKey("lesson_types.id"), nullable=True)
    content_type = Column(String(20), nullable=False, default="lesson")
    credits = Column(Integer, nullable=False, default=0)


class PackagePurchase(Base):
    __tablename__ = "package_purchases"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    package_id = Column(String(26), ForeignKey("packages.id"), nullable=False)
    price_paid = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String(30), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_reference = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
