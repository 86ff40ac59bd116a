# backend/trafikskola/services/teacher_allocator.py
"""
Teacher allocation for new lesson bookings.

Two explicit phases:

1. strict: teachers whose weekly availability window fully covers the
   requested range on that weekday and who have no conflicting booking;
2. fallback: when the strict phase finds nobody, availability windows are
   ignored and only the conflict filter applies. Schools with incomplete
   availability data can still book; ``used_fallback`` on the result (and a
   metric) makes that visible to operators.

Among candidates the teacher with the fewest non-cancelled bookings that day
wins; ties go to discovery order. A single active teacher is returned
unconditionally. Allocation never raises: "nobody" and data-access failures
both come back as an unassigned result.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .time_ranges import any_booking_overlaps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationResult:
    teacher_id: Optional[str]
    used_fallback: bool = False
    strategy: str = "unassigned"

    @property
    def assigned(self) -> bool:
        return self.teacher_id is not None


def day_of_week(target_date: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (target_date.weekday() + 1) % 7


class TeacherAllocator(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.availability_repository = RepositoryFactory.create_availability_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("select_teacher")
    def select_teacher(
        self,
        target_date: date,
        start_time: time,
        end_time: time,
        *,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        try:
            result = self._select(target_date, start_time, end_time, now)
        except Exception as exc:
            self.logger.error(
                "Teacher allocation failed; booking will be unassigned",
                extra={"date": target_date.isoformat(), "error": str(exc)},
            )
            result = AllocationResult(teacher_id=None, strategy="error")
        prometheus_metrics.record_teacher_allocation(result.strategy)
        return result

    def _select(
        self,
        target_date: date,
        start_time: time,
        end_time: time,
        now: Optional[datetime],
    ) -> AllocationResult:
        teachers = self.user_repository.get_active_teachers()
        if not teachers:
            return AllocationResult(teacher_id=None, strategy="no_teachers")
        if len(teachers) == 1:
            return AllocationResult(teacher_id=teachers[0].id, strategy="single_teacher")

        dow = day_of_week(target_date)
        conflict_free = [
            teacher
            for teacher in teachers
            if not self._has_conflict(teacher, target_date, start_time, end_time, now)
        ]
        strict = [
            teacher
            for teacher in conflict_free
            if self._window_covers(teacher, dow, start_time, end_time)
        ]

        if strict:
            return AllocationResult(
                teacher_id=self._least_loaded(strict, target_date).id, strategy="strict"
            )

        if conflict_free:
            chosen = self._least_loaded(conflict_free, target_date)
            self.logger.warning(
                "No teacher availability covers the requested range; used fallback allocation",
                extra={
                    "date": target_date.isoformat(),
                    "start_time": start_time.isoformat(),
                    "end_time": end_time.isoformat(),
                    "teacher_id": chosen.id,
                },
            )
            return AllocationResult(teacher_id=chosen.id, used_fallback=True, strategy="fallback")

        return AllocationResult(teacher_id=None, strategy="unassigned")

    def _window_covers(self, teacher: User, dow: int, start_time: time, end_time: time) -> bool:
        windows = self.availability_repository.get_active_windows(teacher.id, dow)
        return any(window.covers(start_time, end_time) for window in windows)

    def _has_conflict(
        self,
        teacher: User,
        target_date: date,
        start_time: time,
        end_time: time,
        now: Optional[datetime],
    ) -> bool:
        bookings = self.booking_repository.get_bookings_for_date(target_date, teacher_id=teacher.id)
        return any_booking_overlaps(start_time, end_time, bookings, False, now=now)

    def _least_loaded(self, candidates: List[User], target_date: date) -> User:
        # min() keeps the first of equal keys, so ties follow discovery order
        return min(
            candidates,
            key=lambda teacher: self.booking_repository.count_teacher_load(teacher.id, target_date),
        )
