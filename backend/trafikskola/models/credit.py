# backend/trafikskola/models/credit.py
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
import ulid

from ..core.enums import CreditType
from ..core.timezone_utils import utc_now
from ..database import Base


class UserCredit(Base):
    """
    Prepaid credit balance row.

    A null ``lesson_type_id`` together with ``credit_type == 'handledar'`` is a
    generic credit usable for any handledar session.
    """

    __tablename__ = "user_credits"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    lesson_type_id = Column(String(26), ForeignKey("lesson_types.id"), nullable=True)
    handledar_session_id = Column(String(26), ForeignKey("handledar_sessions.id"), nullable=True)
    package_id = Column(String(26), ForeignKey("packages.id"), nullable=True)
    credits_remaining = Column(Integer, nullable=False, default=0)
    credits_total = Column(Integer, nullable=False, default=0)
    credit_type = Column(String(20), nullable=False, default=CreditType.LESSON.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_user_credits_non_negative"),
        CheckConstraint(
            "credits_remaining <= credits_total", name="ck_user_credits_within_total"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserCredit {self.id}: user={self.user_id} type={self.credit_type} "
            f"{self.credits_remaining}/{self.credits_total}>"
        )
