"""
Fixtures for HTTP-level tests.

The app is built fresh per test with ``get_db`` pointed at the test
database and the gateway collaborators on ``app.state`` replaced by the
in-memory fakes from the root conftest.
"""

from typing import Callable, Dict

from fastapi import FastAPI
from fastapi.testclient import TestClient
import pytest

from trafikskola.auth import create_access_token
from trafikskola.database import get_db
from trafikskola.main import create_app
from trafikskola.models.user import User


@pytest.fixture
def app(session_factory, settings_provider, fake_qliro) -> FastAPI:
    application = create_app()

    def _get_test_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_test_db
    application.state.gateway_settings = settings_provider
    application.state.qliro_client_factory = lambda gateway: fake_qliro
    return application


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers_for() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        token = create_access_token({"sub": user.email})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def lesson_body(lesson_type, booking_date) -> Callable[..., dict]:
    def _body(**overrides) -> dict:
        body = {
            "category": "lesson",
            "lessonTypeId": lesson_type.id,
            "scheduledDate": booking_date.isoformat(),
            "startTime": "10:00",
            "endTime": "10:40",
            "durationMinutes": 40,
            "totalPrice": 650,
            "paymentMethod": "swish",
            "guestName": "Gustav Gäst",
            "guestEmail": "gustav@example.se",
            "guestPhone": "0709876543",
        }
        body.update(overrides)
        return {k: v for k, v in body.items() if v is not None}

    return _body
