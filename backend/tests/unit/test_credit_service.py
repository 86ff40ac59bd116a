from datetime import timedelta

import pytest

from trafikskola.core.enums import CreditType
from trafikskola.core.timezone_utils import utc_now
from trafikskola.models.credit import UserCredit
from trafikskola.services.credit_service import CreditService


def _remaining(db, credit: UserCredit) -> int:
    db.refresh(credit)
    return credit.credits_remaining


class TestHasCredit:
    def test_sums_matching_rows(self, db, student, lesson_type, make_credit):
        make_credit(student, 2, lesson_type_id=lesson_type.id)
        make_credit(student, 1, lesson_type_id=lesson_type.id)
        make_credit(student, 5, lesson_type_id=None, credit_type=CreditType.HANDLEDAR.value)

        service = CreditService(db)

        assert service.has_credit(user_id=student.id, lesson_type_id=lesson_type.id) == 8
        assert service.has_credit(user_id=student.id, lesson_type_id=None) == 5

    def test_other_users_and_lesson_types_do_not_count(
        self, db, student, make_user, lesson_type, make_credit
    ):
        make_credit(make_user(), 3, lesson_type_id=lesson_type.id)
        make_credit(student, 3, lesson_type_id="01OTHERLESSONTYPE000000000")

        service = CreditService(db)

        assert service.has_credit(user_id=student.id, lesson_type_id=lesson_type.id) == 0


class TestConsumeOne:
    def test_takes_exactly_one_from_first_row_with_credits(
        self, db, student, lesson_type, make_credit
    ):
        now = utc_now()
        empty = make_credit(student, 0, lesson_type_id=lesson_type.id, created_at=now)
        first = make_credit(
            student, 2, lesson_type_id=lesson_type.id, created_at=now + timedelta(seconds=1)
        )
        second = make_credit(
            student, 4, lesson_type_id=lesson_type.id, created_at=now + timedelta(seconds=2)
        )

        assert CreditService(db).consume_one(user_id=student.id, lesson_type_id=lesson_type.id)

        assert _remaining(db, empty) == 0
        assert _remaining(db, first) == 1
        assert _remaining(db, second) == 4

    def test_returns_false_and_changes_nothing_when_empty(
        self, db, student, lesson_type, make_credit
    ):
        row = make_credit(student, 0, lesson_type_id=lesson_type.id)

        assert not CreditService(db).consume_one(user_id=student.id, lesson_type_id=lesson_type.id)
        assert _remaining(db, row) == 0

    def test_never_goes_negative(self, db, student, lesson_type, make_credit):
        row = make_credit(student, 1, lesson_type_id=lesson_type.id)
        service = CreditService(db)

        results = [
            service.consume_one(user_id=student.id, lesson_type_id=lesson_type.id)
            for _ in range(3)
        ]

        assert results == [True, False, False]
        assert _remaining(db, row) == 0

    def test_generic_handledar_credit_is_usable_for_lessons(
        self, db, student, lesson_type, make_credit
    ):
        generic = make_credit(student, 1, credit_type=CreditType.HANDLEDAR.value)

        assert CreditService(db).consume_one(user_id=student.id, lesson_type_id=lesson_type.id)
        assert _remaining(db, generic) == 0


class TestGrantCredits:
    def test_tops_up_existing_row(self, db, student, lesson_type, make_credit):
        row = make_credit(student, 1, lesson_type_id=lesson_type.id)

        granted = CreditService(db).grant_credits(
            user_id=student.id, credits=5, lesson_type_id=lesson_type.id
        )

        assert granted.id == row.id
        assert _remaining(db, row) == 6
        assert row.credits_total == 6

    def test_creates_generic_row_for_handledar(self, db, student, lesson_type):
        granted = CreditService(db).grant_credits(
            user_id=student.id,
            credits=2,
            lesson_type_id=lesson_type.id,
            credit_type=CreditType.HANDLEDAR.value,
        )

        assert granted.lesson_type_id is None
        assert granted.credit_type == CreditType.HANDLEDAR.value
        assert granted.credits_remaining == 2

    def test_rejects_non_positive_amount(self, db, student):
        with pytest.raises(ValueError):
            CreditService(db).grant_credits(user_id=student.id, credits=0)
