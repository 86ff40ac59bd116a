# backend/trafikskola/services/credit_service.py
"""
Credit ledger.

Balances are summed across every matching row; consumption always takes
exactly one unit from the first row (oldest first) that still has credits.
Callers that combine consumption with other writes pass
``use_transaction=False`` and wrap the whole unit in their own transaction.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import CreditType
from ..models.credit import UserCredit
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


class CreditService(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.credit_repository = RepositoryFactory.create_credit_repository(db)

    @BaseService.measure_operation("has_credit")
    def has_credit(self, *, user_id: str, lesson_type_id: Optional[str]) -> int:
        """Total usable credits for the lesson type (0 when none)."""
        rows = self.credit_repository.get_matching_credits(
            user_id=user_id, lesson_type_id=lesson_type_id
        )
        return sum(max(row.credits_remaining or 0, 0) for row in rows)

    @BaseService.measure_operation("consume_credit")
    def consume_one(
        self,
        *,
        user_id: str,
        lesson_type_id: Optional[str],
        use_transaction: bool = True,
    ) -> bool:
        """Take one credit; False (and no change) when nothing is left."""

        def _consume() -> bool:
            rows = self.credit_repository.get_matching_credits(
                user_id=user_id, lesson_type_id=lesson_type_id
            )
            for row in rows:
                if (row.credits_remaining or 0) <= 0:
                    continue
                # The row may have been drained since it was read; try the next one.
                if self.credit_repository.decrement_one(row.id):
                    self.log_operation(
                        "consume_credit",
                        user_id=user_id,
                        credit_id=row.id,
                        lesson_type_id=lesson_type_id,
                    )
                    return True
            self.logger.info(
                "No usable credits",
                extra={"user_id": user_id, "lesson_type_id": lesson_type_id},
            )
            return False

        if not use_transaction:
            return _consume()
        with self.transaction():
            return _consume()

    @BaseService.measure_operation("grant_credits")
    def grant_credits(
        self,
        *,
        user_id: str,
        credits: int,
        lesson_type_id: Optional[str] = None,
        credit_type: str = CreditType.LESSON.value,
        package_id: Optional[str] = None,
        use_transaction: bool = True,
    ) -> UserCredit:
        """Top up a matching row, or open a new one."""
        if credits <= 0:
            raise ValueError("credits must be positive")

        def _grant() -> UserCredit:
            row = self.credit_repository.find_grant_target(
                user_id=user_id, lesson_type_id=lesson_type_id, credit_type=credit_type
            )
            if row is not None:
                row.credits_remaining = (row.credits_remaining or 0) + credits
                row.credits_total = (row.credits_total or 0) + credits
                self.db.flush()
            else:
                row = self.credit_repository.create(
                    user_id=user_id,
                    lesson_type_id=(
                        None if credit_type == CreditType.HANDLEDAR.value else lesson_type_id
                    ),
                    credits_remaining=credits,
                    credits_total=credits,
                    credit_type=credit_type,
                    package_id=package_id,
                )
            self.log_operation("grant_credits", user_id=user_id, credits=credits, credit_id=row.id)
            return row

        if not use_transaction:
            return _grant()
        with self.transaction():
            return _grant()
