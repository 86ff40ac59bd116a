# backend/trafikskola/models/payment_order.py
"""
Local shadow of a remote Qliro checkout order.

Each row links to exactly one of booking, handledar booking or package
purchase. The merchant reference is unique so that a stable logical
reference always resolves to the same row; rows are never hard-deleted and
stale pending orders are marked ``expired`` by a periodic sweep.
"""

from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
)
import ulid

from ..core.enums import GatewayEnvironment, PaymentOrderStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class QliroOrder(Base):
    __tablename__ = "qliro_orders"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=True, index=True)
    handledar_booking_id = Column(
        String(26), ForeignKey("handledar_bookings.id"), nullable=True, index=True
    )
    package_purchase_id = Column(
        String(26), ForeignKey("package_purchases.id"), nullable=True, index=True
    )

    qliro_order_id = Column(String(64), nullable=False, index=True)
    merchant_reference = Column(String(25), nullable=False, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="SEK")
    payment_link = Column(String(1024), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentOrderStatus.CREATED.value)
    environment = Column(String(20), nullable=False, default=GatewayEnvironment.SANDBOX.value)

    # Binds incoming status pushes to the order that spawned them
    callback_token = Column(String(64), nullable=True, unique=True)
    callback_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    last_status_check = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN booking_id IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN handledar_booking_id IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN package_purchase_id IS NOT NULL THEN 1 ELSE 0 END) <= 1",
            name="ck_qliro_orders_single_reference",
        ),
        Index("ix_qliro_orders_status_created", "status", "created_at"),
    )

    @property
    def correlation(self) -> dict[str, Optional[str]]:
        return {
            "booking_id": self.booking_id,
            "handledar_booking_id": self.handledar_booking_id,
            "package_purchase_id": self.package_purchase_id,
        }

    def __repr__(self) -> str:
        return (
            f"<QliroOrder {self.id}: remote={self.qliro_order_id} "
            f"ref={self.merchant_reference} status={self.status}>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "qliroOrderId": self.qliro_order_id,
            "merchantReference": self.merchant_reference,
            "amount": float(self.amount) if self.amount is not None else None,
            "paymentLink": self.payment_link,
            "status": self.status,
            "environment": self.environment,
            **{k: v for k, v in self.correlation.items() if v},
        }
