"""
Shared pytest configuration.

The environment is pinned BEFORE any trafikskola import: settings are read
once at import time. Redis is switched off so slot locks and rate limiting
fail open unless a test injects a client.

Every test gets a fresh in-memory SQLite database; services commit for
real, so there is no savepoint juggling.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_URL"] = ""
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["CI"] = "true"

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import ulid

from trafikskola.core.enums import (
    BookingStatus,
    CreditType,
    PaymentMethod,
    PaymentStatus,
    RoleName,
)
from trafikskola.core.redis import reset_sync_redis
from trafikskola.core.timezone_utils import get_school_today, utc_now
from trafikskola.database import Base
from trafikskola.integrations.qliro_client import FakeQliroClient
import trafikskola.models  # noqa: F401
from trafikskola.models.availability import BlockedSlot, TeacherAvailability
from trafikskola.models.booking import Booking
from trafikskola.models.credit import UserCredit
from trafikskola.models.handledar import HandledarSession
from trafikskola.models.lesson_type import LessonType
from trafikskola.models.user import User
from trafikskola.schemas.booking import HandledarBookingRequest, LessonBookingRequest
from trafikskola.services.booking_service import BookingService
from trafikskola.services.gateway_settings import GatewaySettings, GatewaySettingsProvider
from trafikskola.services.notification_service import NotificationService
from trafikskola.services.qliro_service import QliroService, RetryPolicy
from trafikskola.services.teacher_allocator import day_of_week


@pytest.fixture(autouse=True)
def _no_redis():
    reset_sync_redis()
    yield
    reset_sync_redis()


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Domain data
# ============================================================================


@pytest.fixture
def booking_date() -> date:
    """A date safely in the future (two weeks ahead, school-local)."""
    return get_school_today() + timedelta(days=14)


@pytest.fixture
def make_user(db) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(
        role: str = RoleName.STUDENT.value,
        email: Optional[str] = None,
        first_name: str = "Test",
        last_name: str = "User",
        created_at: Optional[datetime] = None,
        **kwargs: Any,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"{role}{counter['n']}-{str(ulid.ULID()).lower()}@example.se",
            hashed_password="not-a-real-hash",
            first_name=first_name,
            last_name=last_name,
            role=role,
            created_at=created_at or utc_now() + timedelta(seconds=counter["n"]),
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def student(make_user) -> User:
    return make_user(first_name="Sara", last_name="Student", phone="0701234567")


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user(role=RoleName.ADMIN.value, first_name="Anna", last_name="Admin")


@pytest.fixture
def make_teacher(make_user) -> Callable[..., User]:
    def _make(first_name: str = "Teo", **kwargs: Any) -> User:
        return make_user(role=RoleName.TEACHER.value, first_name=first_name, **kwargs)

    return _make


@pytest.fixture
def lesson_type(db) -> LessonType:
    lt = LessonType(name="Körlektion 40 min", duration_minutes=40, price=Decimal("650.00"))
    db.add(lt)
    db.commit()
    return lt


@pytest.fixture
def make_availability(db) -> Callable[..., TeacherAvailability]:
    def _make(
        teacher: User, on_date: date, start: str = "08:00", end: str = "17:00"
    ) -> TeacherAvailability:
        window = TeacherAvailability(
            teacher_id=teacher.id,
            day_of_week=day_of_week(on_date),
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
        )
        db.add(window)
        db.commit()
        return window

    return _make


@pytest.fixture
def make_block(db) -> Callable[..., BlockedSlot]:
    def _make(
        on_date: date, start: Optional[str] = None, end: Optional[str] = None
    ) -> BlockedSlot:
        block = BlockedSlot(
            date=on_date,
            time_start=time.fromisoformat(start) if start else None,
            time_end=time.fromisoformat(end) if end else None,
            is_all_day=start is None,
            reason="Stängt",
        )
        db.add(block)
        db.commit()
        return block

    return _make


@pytest.fixture
def make_booking(db, lesson_type, booking_date) -> Callable[..., Booking]:
    def _make(
        start: str = "10:00",
        end: str = "10:40",
        status: str = BookingStatus.CONFIRMED.value,
        payment_status: str = PaymentStatus.PAID.value,
        scheduled_date: Optional[date] = None,
        created_at: Optional[datetime] = None,
        **kwargs: Any,
    ) -> Booking:
        booking = Booking(
            lesson_type_id=lesson_type.id,
            scheduled_date=scheduled_date or booking_date,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            duration_minutes=40,
            status=status,
            payment_status=payment_status,
            total_price=Decimal("650.00"),
            created_at=created_at or utc_now(),
            **kwargs,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def make_session(db, booking_date) -> Callable[..., HandledarSession]:
    def _make(max_participants: int = 2, current_participants: int = 0) -> HandledarSession:
        session = HandledarSession(
            title="Handledarutbildning",
            date=booking_date,
            start_time=time(17, 0),
            end_time=time(20, 0),
            max_participants=max_participants,
            current_participants=current_participants,
            price_per_participant=Decimal("500.00"),
        )
        db.add(session)
        db.commit()
        return session

    return _make


@pytest.fixture
def make_credit(db) -> Callable[..., UserCredit]:
    def _make(
        user: User,
        remaining: int = 1,
        lesson_type_id: Optional[str] = None,
        credit_type: str = CreditType.LESSON.value,
        created_at: Optional[datetime] = None,
    ) -> UserCredit:
        credit = UserCredit(
            user_id=user.id,
            lesson_type_id=lesson_type_id,
            credits_remaining=remaining,
            credits_total=max(remaining, 1),
            credit_type=credit_type,
            created_at=created_at or utc_now(),
        )
        db.add(credit)
        db.commit()
        return credit

    return _make


@pytest.fixture
def lesson_request(lesson_type, booking_date) -> Callable[..., LessonBookingRequest]:
    def _make(**overrides: Any) -> LessonBookingRequest:
        data: dict = {
            "lesson_type_id": lesson_type.id,
            "scheduled_date": booking_date,
            "start_time": "10:00",
            "end_time": "10:40",
            "duration_minutes": 40,
            "total_price": Decimal("650.00"),
            "payment_method": PaymentMethod.SWISH,
            "guest_name": "Gustav Gäst",
            "guest_email": "gustav@example.se",
            "guest_phone": "0709876543",
        }
        data.update(overrides)
        return LessonBookingRequest(**data)

    return _make


@pytest.fixture
def handledar_request() -> Callable[..., HandledarBookingRequest]:
    def _make(session_id: Optional[str], **overrides: Any) -> HandledarBookingRequest:
        data: dict = {
            "category": "handledar",
            "session_id": session_id,
            "supervisor_name": "Helga Handledare",
            "payment_method": PaymentMethod.SWISH,
            "guest_name": "Gustav Gäst",
            "guest_email": "gustav@example.se",
            "guest_phone": "0709876543",
        }
        data.update(overrides)
        return HandledarBookingRequest(**data)

    return _make


# ============================================================================
# Payment gateway
# ============================================================================


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(
        enabled=True,
        api_key="test-api-key",
        api_secret="test-api-secret",
        environment="sandbox",
        api_url="https://pago.qit.nu",
        public_url="https://trafikskola.test",
        webhook_secret="whsec-test",
    )


@pytest.fixture
def settings_provider(gateway_settings) -> GatewaySettingsProvider:
    return GatewaySettingsProvider(lambda: gateway_settings)


@pytest.fixture
def fake_qliro() -> FakeQliroClient:
    return FakeQliroClient()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays requested by the retry policy (nothing actually sleeps)."""
    return []


@pytest.fixture
def qliro_service(db, settings_provider, fake_qliro, sleeps) -> QliroService:
    return QliroService(
        db,
        settings_provider,
        client_factory=lambda gateway: fake_qliro,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=1.0, sleep=sleeps.append),
    )


@pytest.fixture
def notification_service(db) -> NotificationService:
    return NotificationService(db)


@pytest.fixture
def booking_service(db, notification_service, qliro_service) -> BookingService:
    return BookingService(
        db, notification_service=notification_service, qliro_service=qliro_service
    )
