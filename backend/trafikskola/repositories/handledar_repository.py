# backend/trafikskola/repositories/handledar_repository.py
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.handledar import HandledarBooking, HandledarSession
from .base_repository import BaseRepository


class HandledarRepository(BaseRepository[HandledarSession]):
    """Handledar sessions and their seat counters."""

    def __init__(self, db: Session):
        super().__init__(db, HandledarSession)

    def get_active_session(self, session_id: str) -> Optional[HandledarSession]:
        try:
            return (
                self.db.query(HandledarSession)
                .filter(HandledarSession.id == session_id, HandledarSession.is_active.is_(True))
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting handledar session {session_id}: {str(e)}")
            raise RepositoryException(f"Failed to get session: {str(e)}")

    def take_seat(self, session_id: str) -> bool:
        """Increment the participant count if a seat is free; False when full."""
        try:
            result = self.db.execute(
                update(HandledarSession)
                .where(
                    HandledarSession.id == session_id,
                    HandledarSession.current_participants < HandledarSession.max_participants,
                )
                .values(current_participants=HandledarSession.current_participants + 1)
                .execution_options(synchronize_session="fetch")
            )
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error(f"Error taking seat on {session_id}: {str(e)}")
            raise RepositoryException(f"Failed to update session: {str(e)}")

    def release_seat(self, session_id: str) -> None:
        """Decrement the participant count, floored at zero."""
        try:
            self.db.execute(
                update(HandledarSession)
                .where(HandledarSession.id == session_id)
                .values(
                    current_participants=case(
                        (
                            HandledarSession.current_participants > 0,
                            HandledarSession.current_participants - 1,
                        ),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error releasing seat on {session_id}: {str(e)}")
            raise RepositoryException(f"Failed to update session: {str(e)}")

    def get_booking(self, booking_id: str) -> Optional[HandledarBooking]:
        try:
            return self.db.query(HandledarBooking).filter(HandledarBooking.id == booking_id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting handledar booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to get handledar booking: {str(e)}")

    def create_booking(self, **kwargs) -> HandledarBooking:
        try:
            booking = HandledarBooking(**kwargs)
            self.db.add(booking)
            self.db.flush()
            return booking
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating handledar booking: {str(e)}")
            raise RepositoryException(f"Failed to create handledar booking: {str(e)}")

    def get_expired_pending_bookings(self, cutoff: datetime) -> List[HandledarBooking]:
        try:
            return (
                self.db.query(HandledarBooking)
                .filter(
                    HandledarBooking.status == "pending",
                    HandledarBooking.payment_status != "paid",
                    HandledarBooking.created_at < cutoff,
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting expired handledar bookings: {str(e)}")
            raise RepositoryException(f"Failed to get handledar bookings: {str(e)}")
