# backend/trafikskola/repositories/credit_repository.py
"""
Credit Repository

Matching rule shared by balance checks and consumption: a row matches when
its lesson type equals the requested one, or when it is a generic handledar
credit (no lesson type, credit_type 'handledar').
"""

import logging
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..core.enums import CreditType
from ..core.exceptions import RepositoryException
from ..models.credit import UserCredit
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class CreditRepository(BaseRepository[UserCredit]):
    """Repository for user credit balances."""

    def __init__(self, db: Session):
        super().__init__(db, UserCredit)
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _matching_clause(lesson_type_id: Optional[str]):
        generic = and_(
            UserCredit.lesson_type_id.is_(None),
            UserCredit.credit_type == CreditType.HANDLEDAR.value,
        )
        if lesson_type_id is None:
            return generic
        return or_(UserCredit.lesson_type_id == lesson_type_id, generic)

    def get_matching_credits(
        self, *, user_id: str, lesson_type_id: Optional[str]
    ) -> List[UserCredit]:
        """Matching rows in discovery order (oldest first)."""
        try:
            return (
                self.db.query(UserCredit)
                .filter(UserCredit.user_id == user_id, self._matching_clause(lesson_type_id))
                .order_by(UserCredit.created_at.asc(), UserCredit.id.asc())
                .all()
            )
        except Exception as exc:
            self.logger.error("Failed to get matching credits: %s", str(exc))
            raise RepositoryException("Failed to get matching credits") from exc

    def decrement_one(self, credit_id: str) -> bool:
        """
        Atomically take one unit from a row.

        The guard in the WHERE clause keeps the balance from going negative
        when two consumers picked the same row.
        """
        try:
            result = self.db.execute(
                update(UserCredit)
                .where(UserCredit.id == credit_id, UserCredit.credits_remaining > 0)
                .values(credits_remaining=UserCredit.credits_remaining - 1)
                .execution_options(synchronize_session="fetch")
            )
            return bool(result.rowcount)
        except Exception as exc:
            self.logger.error("Failed to decrement credit %s: %s", credit_id, str(exc))
            raise RepositoryException("Failed to decrement credit") from exc

    def find_grant_target(
        self, *, user_id: str, lesson_type_id: Optional[str], credit_type: str
    ) -> Optional[UserCredit]:
        """Existing row that a package grant should top up."""
        try:
            query = self.db.query(UserCredit).filter(UserCredit.user_id == user_id)
            if credit_type == CreditType.HANDLEDAR.value:
                query = query.filter(UserCredit.credit_type == CreditType.HANDLEDAR.value)
            else:
                query = query.filter(UserCredit.lesson_type_id == lesson_type_id)
            return query.order_by(UserCredit.created_at.asc()).first()
        except Exception as exc:
            self.logger.error("Failed to find credit row: %s", str(exc))
            raise RepositoryException("Failed to find credit row") from exc
