# backend/trafikskola/models/availability.py
"""
Availability inputs to booking.

TeacherAvailability is a recurring weekly template read by the teacher
allocator. BlockedSlot is an admin-defined block on a concrete date, either
all day or for a time range.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
)
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base


class TeacherAvailability(Base):
    """
    Weekly availability window for a teacher.

    ``day_of_week`` follows the 0 = Sunday convention.
    """

    __tablename__ = "teacher_availability"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    teacher_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_availability_dow"),
        CheckConstraint("start_time < end_time", name="ck_availability_time_order"),
    )

    def covers(self, start, end) -> bool:
        """True when [start, end] lies fully inside this window."""
        return start >= self.start_time and end <= self.end_time

    def __repr__(self) -> str:
        return (
            f"<TeacherAvailability teacher={self.teacher_id} dow={self.day_of_week} "
            f"{self.start_time}-{self.end_time}>"
        )


class BlockedSlot(Base):
    __tablename__ = "blocked_slots"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    date = Column(Date, nullable=False)
    time_start = Column(Time, nullable=True)
    time_end = Column(Time, nullable=True)
    is_all_day = Column(Boolean, nullable=False, default=False)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (Index("ix_blocked_slots_date", "date"),)
