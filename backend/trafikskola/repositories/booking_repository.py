# backend/trafikskola/repositories/booking_repository.py
"""
Booking repository.

Conflict queries return every non-deleted booking of a date; deciding which
of them are *active* (cancelled, expired holds) is the job of the pure
overlap utility so that the rule lives in one place.
"""

from datetime import date, datetime
import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingStatus, PaymentStatus
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_for_update(self, booking_id: str) -> Optional[Booking]:
        """Load a booking with a row lock (no-op on SQLite)."""
        try:
            return (
                self.db.query(Booking)
                .filter(Booking.id == booking_id, Booking.deleted_at.is_(None))
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error locking booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load booking: {str(e)}")

    def get_bookings_for_date(
        self, booking_date: date, teacher_id: Optional[str] = None
    ) -> List[Booking]:
        """All non-deleted bookings on a date, optionally for one teacher."""
        try:
            query = self.db.query(Booking).filter(
                Booking.scheduled_date == booking_date,
                Booking.deleted_at.is_(None),
            )
            if teacher_id is not None:
                query = query.filter(Booking.teacher_id == teacher_id)
            return query.order_by(Booking.start_time).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting bookings for {booking_date}: {str(e)}")
            raise RepositoryException(f"Failed to get bookings: {str(e)}")

    def count_teacher_load(self, teacher_id: str, booking_date: date) -> int:
        """Number of non-cancelled bookings the teacher has on the date."""
        try:
            return (
                self.db.query(func.count(Booking.id))
                .filter(
                    Booking.teacher_id == teacher_id,
                    Booking.scheduled_date == booking_date,
                    Booking.status != BookingStatus.CANCELLED.value,
                    Booking.deleted_at.is_(None),
                )
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting load for teacher {teacher_id}: {str(e)}")
            raise RepositoryException(f"Failed to count teacher bookings: {str(e)}")

    def get_expired_holds(self, cutoff: datetime) -> List[Booking]:
        """Unpaid temp/on_hold bookings created before ``cutoff``."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status.in_([s.value for s in BookingStatus.holds()]),
                    Booking.payment_status == PaymentStatus.UNPAID.value,
                    Booking.created_at < cutoff,
                    Booking.deleted_at.is_(None),
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting expired holds: {str(e)}")
            raise RepositoryException(f"Failed to get expired holds: {str(e)}")

    def get_stale_cancelled(self, cutoff: datetime) -> List[Booking]:
        """Cancelled bookings last touched before ``cutoff``."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status == BookingStatus.CANCELLED.value,
                    func.coalesce(Booking.updated_at, Booking.created_at) < cutoff,
                    Booking.deleted_at.is_(None),
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting stale cancelled bookings: {str(e)}")
            raise RepositoryException(f"Failed to get cancelled bookings: {str(e)}")
