# backend/trafikskola/models/user.py
"""
User model.

Students, teachers and admins share one table, differentiated by ``role``.
Guest bookers are promoted into this table once they confirm a booking.
"""

from sqlalchemy import Boolean, Column, DateTime, String
import ulid

from ..core.enums import RoleName
from ..core.timezone_utils import utc_now
from ..database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default="")
    phone = Column(String(30), nullable=True)
    role = Column(String(20), nullable=False, default=RoleName.STUDENT.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_privileged(self) -> bool:
        """Admins and teachers may book on behalf of a student."""
        return self.role in (RoleName.ADMIN.value, RoleName.TEACHER.value)

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email} ({self.role})>"
