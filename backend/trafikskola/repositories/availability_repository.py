# backend/trafikskola/repositories/availability_repository.py
from datetime import date
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.availability import BlockedSlot, TeacherAvailability
from .base_repository import BaseRepository


class AvailabilityRepository(BaseRepository[TeacherAvailability]):
    """Weekly teacher windows and admin date blocks."""

    def __init__(self, db: Session):
        super().__init__(db, TeacherAvailability)

    def get_active_windows(self, teacher_id: str, day_of_week: int) -> List[TeacherAvailability]:
        try:
            return (
                self.db.query(TeacherAvailability)
                .filter(
                    TeacherAvailability.teacher_id == teacher_id,
                    TeacherAvailability.day_of_week == day_of_week,
                    TeacherAvailability.is_active.is_(True),
                )
                .order_by(TeacherAvailability.start_time)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting availability for teacher {teacher_id}: {str(e)}")
            raise RepositoryException(f"Failed to get availability: {str(e)}")

    def get_blocks_for_date(self, target_date: date) -> List[BlockedSlot]:
        try:
            return self.db.query(BlockedSlot).filter(BlockedSlot.date == target_date).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting blocked slots for {target_date}: {str(e)}")
            raise RepositoryException(f"Failed to get blocked slots: {str(e)}")
