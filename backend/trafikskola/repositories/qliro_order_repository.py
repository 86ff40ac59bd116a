# backend/trafikskola/repositories/qliro_order_repository.py
"""
Repository for local Qliro order records.

Lookups by correlation id and by merchant reference are the two idempotency
checks performed before a remote order is created.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PaymentOrderStatus
from ..core.exceptions import RepositoryException
from ..models.payment_order import QliroOrder
from .base_repository import BaseRepository

CORRELATION_FIELDS = ("booking_id", "handledar_booking_id", "package_purchase_id")


class QliroOrderRepository(BaseRepository[QliroOrder]):
    def __init__(self, db: Session):
        super().__init__(db, QliroOrder)

    def get_by_correlation(self, **correlation: Optional[str]) -> Optional[QliroOrder]:
        """Most recent non-expired order linked to the given reference."""
        filters = [
            getattr(QliroOrder, name) == value
            for name, value in correlation.items()
            if name in CORRELATION_FIELDS and value
        ]
        if not filters:
            return None
        try:
            return (
                self.db.query(QliroOrder)
                .filter(*filters)
                .filter(QliroOrder.status != PaymentOrderStatus.EXPIRED.value)
                .order_by(QliroOrder.created_at.desc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting order by correlation {correlation}: {str(e)}")
            raise RepositoryException(f"Failed to get order: {str(e)}")

    def get_by_merchant_reference(self, merchant_reference: str) -> Optional[QliroOrder]:
        return self.find_one_by(merchant_reference=merchant_reference)

    def get_by_remote_id(self, qliro_order_id: str) -> Optional[QliroOrder]:
        return self.find_one_by(qliro_order_id=str(qliro_order_id))

    def get_by_callback_token(self, token: str) -> Optional[QliroOrder]:
        return self.find_one_by(callback_token=token)

    def get_stale_pending(self, cutoff: datetime) -> List[QliroOrder]:
        try:
            return (
                self.db.query(QliroOrder)
                .filter(
                    QliroOrder.status.in_(
                        [PaymentOrderStatus.CREATED.value, PaymentOrderStatus.PENDING.value]
                    ),
                    QliroOrder.created_at < cutoff,
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting stale orders: {str(e)}")
            raise RepositoryException(f"Failed to get stale orders: {str(e)}")

    def exists_for(self, **correlation: Optional[str]) -> bool:
        """Whether any order (in any status) references the given entity."""
        filters = [
            getattr(QliroOrder, name) == value
            for name, value in correlation.items()
            if name in CORRELATION_FIELDS and value
        ]
        if not filters:
            return False
        try:
            return self.db.query(QliroOrder.id).filter(*filters).first() is not None
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking orders for {correlation}: {str(e)}")
            raise RepositoryException(f"Failed to check orders: {str(e)}")
