# backend/trafikskola/models/lesson_type.py
from sqlalchemy import Boolean, Column, Integer, Numeric, String
import ulid

from ..database import Base


class LessonType(Base):
    """A bookable one-to-one lesson kind (e.g. a 40 minute driving lesson)."""

    __tablename__ = "lesson_types"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    name = Column(String(255), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=45)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
