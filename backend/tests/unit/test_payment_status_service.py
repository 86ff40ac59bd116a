import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from trafikskola.core.enums import (
    BookingStatus,
    CreditType,
    PaymentMethod,
    PaymentOrderStatus,
    PaymentStatus,
)
from trafikskola.core.exceptions import NotFoundException, UnauthorizedException
from trafikskola.core.timezone_utils import utc_now
from trafikskola.models.booking import Booking
from trafikskola.models.credit import UserCredit
from trafikskola.models.handledar import HandledarBooking
from trafikskola.models.package import Package, PackageContent, PackagePurchase
from trafikskola.models.payment_order import QliroOrder
from trafikskola.schemas.payments import QliroStatusPush
from trafikskola.services.notification_service import NotificationTrigger
from trafikskola.services.payment_status_service import PaymentStatusService
from trafikskola.services.qliro_service import PaymentCorrelation


@pytest.fixture
def status_service(db, qliro_service, notification_service) -> PaymentStatusService:
    return PaymentStatusService(db, qliro_service, notification_service=notification_service)


@pytest.fixture
def held_booking(make_booking):
    return make_booking(status=BookingStatus.TEMP.value, payment_status=PaymentStatus.UNPAID.value)


def _open_order(db, qliro_service, correlation: PaymentCorrelation, reference: str) -> QliroOrder:
    qliro_service.get_or_create_checkout(
        amount=Decimal("650.00"),
        reference=reference,
        description="Körlektion",
        return_url="https://trafikskola.test/booking/confirmation",
        correlation=correlation,
    )
    return db.query(QliroOrder).filter_by(**correlation.as_filters()).one()


@pytest.fixture
def booking_order(db, qliro_service, held_booking) -> QliroOrder:
    return _open_order(
        db, qliro_service, PaymentCorrelation(booking_id=held_booking.id), f"booking_{held_booking.id}"
    )


def _push(order: QliroOrder, status: str, **extra) -> QliroStatusPush:
    return QliroStatusPush.model_validate({"OrderId": order.qliro_order_id, "Status": status, **extra})


def _rejections(notification_service):
    return notification_service.triggers().count(NotificationTrigger.PAYMENT_REJECTED)


class TestStatusPush:
    def test_completed_confirms_and_pays(
        self, db, status_service, booking_order, held_booking, notification_service
    ):
        status = status_service.apply_status_push(
            booking_order.callback_token, _push(booking_order, "Completed")
        )

        assert status == PaymentOrderStatus.COMPLETED
        db.refresh(held_booking)
        db.refresh(booking_order)
        assert held_booking.status == BookingStatus.CONFIRMED.value
        assert held_booking.payment_status == PaymentStatus.PAID.value
        assert held_booking.payment_method == PaymentMethod.QLIRO.value
        assert booking_order.status == PaymentOrderStatus.COMPLETED.value
        assert booking_order.last_status_check is not None
        assert notification_service.triggers().count(NotificationTrigger.PAYMENT_CONFIRMED) == 1

    def test_replayed_push_is_idempotent(
        self, status_service, booking_order, notification_service
    ):
        push = _push(booking_order, "Completed")
        status_service.apply_status_push(booking_order.callback_token, push)
        status_service.apply_status_push(booking_order.callback_token, push)

        assert notification_service.triggers().count(NotificationTrigger.PAYMENT_CONFIRMED) == 1

    def test_on_hold_marks_payment_pending(self, db, status_service, booking_order, held_booking):
        status_service.apply_status_push(booking_order.callback_token, _push(booking_order, "OnHold"))

        db.refresh(held_booking)
        assert held_booking.status == BookingStatus.CONFIRMED.value
        assert held_booking.payment_status == PaymentStatus.PENDING.value

    def test_failed_cancels_the_hold(
        self, db, status_service, booking_order, held_booking, notification_service
    ):
        status_service.apply_status_push(booking_order.callback_token, _push(booking_order, "Refused"))
        status_service.apply_status_push(booking_order.callback_token, _push(booking_order, "Refused"))

        db.refresh(held_booking)
        assert held_booking.status == BookingStatus.CANCELLED.value
        assert held_booking.payment_status == PaymentStatus.FAILED.value
        assert _rejections(notification_service) == 1

    def test_late_payment_on_cancelled_booking_is_recorded_only(
        self, db, status_service, booking_order, held_booking, notification_service
    ):
        held_booking.status = BookingStatus.CANCELLED.value
        db.commit()

        status_service.apply_status_push(
            booking_order.callback_token, _push(booking_order, "Completed")
        )

        db.refresh(held_booking)
        assert held_booking.status == BookingStatus.CANCELLED.value
        assert held_booking.payment_status == PaymentStatus.PAID.value
        assert NotificationTrigger.PAYMENT_CONFIRMED not in notification_service.triggers()

    def test_unknown_token(self, status_service, booking_order):
        with pytest.raises(UnauthorizedException):
            status_service.apply_status_push("not-a-token", _push(booking_order, "Completed"))

    def test_token_of_another_order(self, db, status_service, booking_order, held_booking):
        push = QliroStatusPush.model_validate({"OrderId": "999999", "Status": "Completed"})

        with pytest.raises(UnauthorizedException):
            status_service.apply_status_push(booking_order.callback_token, push)

        db.refresh(held_booking)
        assert held_booking.payment_status == PaymentStatus.UNPAID.value


class TestWebhook:
    def _signed(self, body: dict):
        raw = json.dumps(body).encode("utf-8")
        signature = hmac.new(b"whsec-test", raw, hashlib.sha256).hexdigest()
        return signature, raw, QliroStatusPush.model_validate_json(raw)

    def test_valid_signature_applies_status(self, db, status_service, booking_order, held_booking):
        signature, raw, push = self._signed(
            {"OrderId": booking_order.qliro_order_id, "Status": "Completed"}
        )

        assert status_service.apply_webhook(signature, raw, push) == PaymentOrderStatus.COMPLETED
        db.refresh(held_booking)
        assert held_booking.payment_status == PaymentStatus.PAID.value

    def test_order_is_found_by_merchant_reference(self, db, status_service, booking_order):
        signature, raw, push = self._signed(
            {"MerchantReference": booking_order.merchant_reference, "Status": "OnHold"}
        )

        status_service.apply_webhook(signature, raw, push)

        db.refresh(booking_order)
        assert booking_order.status == PaymentOrderStatus.ON_HOLD.value

    def test_invalid_signature_changes_nothing(
        self, db, status_service, booking_order, held_booking
    ):
        _, raw, push = self._signed({"OrderId": booking_order.qliro_order_id, "Status": "Completed"})

        with pytest.raises(UnauthorizedException):
            status_service.apply_webhook("0" * 64, raw, push)

        db.refresh(held_booking)
        assert held_booking.payment_status == PaymentStatus.UNPAID.value

    def test_unknown_order(self, status_service):
        signature, raw, push = self._signed({"OrderId": "424242", "Status": "Completed"})
        with pytest.raises(NotFoundException):
            status_service.apply_webhook(signature, raw, push)


class TestHandledarPush:
    def test_failure_releases_the_seat(
        self, db, booking_service, status_service, handledar_request, make_session,
        notification_service,
    ):
        session = make_session(max_participants=2)
        hb = booking_service.create(
            handledar_request(session.id, payment_method=PaymentMethod.QLIRO)
        ).booking
        order = db.query(QliroOrder).filter_by(handledar_booking_id=hb.id).one()
        db.refresh(session)
        assert session.current_participants == 1

        status_service.apply_status_push(order.callback_token, _push(order, "Cancelled"))
        status_service.apply_status_push(order.callback_token, _push(order, "Cancelled"))

        db.refresh(hb)
        db.refresh(session)
        assert hb.status == BookingStatus.CANCELLED.value
        assert hb.payment_status == PaymentStatus.FAILED.value
        assert session.current_participants == 0
        assert _rejections(notification_service) == 1

    def test_completed_confirms_seat(
        self, db, booking_service, status_service, handledar_request, make_session
    ):
        session = make_session()
        hb = booking_service.create(
            handledar_request(session.id, payment_method=PaymentMethod.QLIRO)
        ).booking
        order = db.query(QliroOrder).filter_by(handledar_booking_id=hb.id).one()

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(hb)
        assert hb.status == BookingStatus.CONFIRMED.value
        assert hb.payment_status == PaymentStatus.PAID.value


class TestLatePayments:
    """Gateway pushes that arrive after the hold window has run out."""

    @pytest.fixture
    def lapsed(self, db, booking_service, lesson_request):
        booking = booking_service.create(
            lesson_request(payment_method=PaymentMethod.QLIRO),
            now=utc_now() - timedelta(minutes=11),
        ).booking
        order = db.query(QliroOrder).filter_by(booking_id=booking.id).one()
        return booking, order

    def _rival(self, booking_service, lesson_request):
        return booking_service.create(
            lesson_request(guest_name="Rut Rival", guest_email="rut@example.se")
        ).booking

    def test_completed_while_slot_is_free_confirms(
        self, db, status_service, lapsed, notification_service
    ):
        booking, order = lapsed

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.payment_status == PaymentStatus.PAID.value
        assert NotificationTrigger.PAYMENT_REFUND_REQUIRED not in notification_service.triggers()

    def test_completed_after_slot_was_taken_flags_refund(
        self, db, booking_service, status_service, lesson_request, lapsed, notification_service
    ):
        booking, order = lapsed
        rival = self._rival(booking_service, lesson_request)

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(booking)
        db.refresh(rival)
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.payment_status == PaymentStatus.PAID.value
        assert booking.payment_method == PaymentMethod.QLIRO.value
        assert rival.status == BookingStatus.TEMP.value
        assert NotificationTrigger.PAYMENT_CONFIRMED not in notification_service.triggers()

        (notice,) = [
            n for n in notification_service.dispatched
            if n.trigger == NotificationTrigger.PAYMENT_REFUND_REQUIRED
        ]
        assert notice.context["booking_id"] == booking.id

        active = [b for b in db.query(Booking).all() if not b.is_cancelled]
        assert [b.id for b in active] == [rival.id]

    def test_on_hold_after_slot_was_taken_keeps_booking_cancelled(
        self, db, booking_service, status_service, lesson_request, lapsed
    ):
        booking, order = lapsed
        self._rival(booking_service, lesson_request)

        status_service.apply_status_push(order.callback_token, _push(order, "OnHold"))

        db.refresh(booking)
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.payment_status == PaymentStatus.PENDING.value

    def test_handledar_seat_given_away_is_not_overbooked(
        self, db, booking_service, status_service, handledar_request, make_session,
        notification_service,
    ):
        session = make_session(max_participants=1)
        hb = booking_service.create(
            handledar_request(session.id, payment_method=PaymentMethod.QLIRO),
            now=utc_now() - timedelta(minutes=11),
        ).booking
        order = db.query(QliroOrder).filter_by(handledar_booking_id=hb.id).one()
        booking_service.expire_stale_holds()
        booking_service.create(handledar_request(session.id, guest_email="rut@example.se"))

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(hb)
        db.refresh(session)
        assert hb.status == BookingStatus.CANCELLED.value
        assert hb.payment_status == PaymentStatus.PAID.value
        assert session.current_participants == 1
        assert db.query(HandledarBooking).filter_by(status=BookingStatus.CANCELLED.value).count() == 1
        assert NotificationTrigger.PAYMENT_REFUND_REQUIRED in notification_service.triggers()
        assert NotificationTrigger.PAYMENT_CONFIRMED not in notification_service.triggers()

    def test_handledar_seat_still_free_is_reclaimed(
        self, db, booking_service, status_service, handledar_request, make_session
    ):
        session = make_session(max_participants=1)
        hb = booking_service.create(
            handledar_request(session.id, payment_method=PaymentMethod.QLIRO),
            now=utc_now() - timedelta(minutes=11),
        ).booking
        order = db.query(QliroOrder).filter_by(handledar_booking_id=hb.id).one()
        booking_service.expire_stale_holds()
        db.refresh(session)
        assert session.current_participants == 0

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(hb)
        db.refresh(session)
        assert hb.status == BookingStatus.CONFIRMED.value
        assert hb.payment_status == PaymentStatus.PAID.value
        assert session.current_participants == 1



class TestPackagePush:
    @pytest.fixture
    def purchase(self, db, student, lesson_type) -> PackagePurchase:
        package = Package(name="Paket 5+1", price=Decimal("3500.00"))
        db.add(package)
        db.flush()
        db.add_all(
            [
                PackageContent(
                    package_id=package.id, lesson_type_id=lesson_type.id, content_type="lesson", credits=5
                ),
                PackageContent(package_id=package.id, content_type="handledar", credits=1),
            ]
        )
        purchase = PackagePurchase(
            user_id=student.id, package_id=package.id, price_paid=Decimal("3500.00")
        )
        db.add(purchase)
        db.commit()
        return purchase

    def test_completed_grants_package_credits_once(
        self, db, qliro_service, status_service, purchase, student, lesson_type
    ):
        order = _open_order(
            db,
            qliro_service,
            PaymentCorrelation(package_purchase_id=purchase.id),
            f"package_{purchase.id}",
        )

        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))
        status_service.apply_status_push(order.callback_token, _push(order, "Completed"))

        db.refresh(purchase)
        assert purchase.payment_status == PaymentStatus.PAID.value
        assert purchase.payment_reference == order.qliro_order_id
        assert purchase.paid_at is not None

        credits = {
            c.credit_type: c for c in db.query(UserCredit).filter_by(user_id=student.id).all()
        }
        assert credits[CreditType.LESSON.value].lesson_type_id == lesson_type.id
        assert credits[CreditType.LESSON.value].credits_remaining == 5
        assert credits[CreditType.HANDLEDAR.value].lesson_type_id is None
        assert credits[CreditType.HANDLEDAR.value].credits_remaining == 1

    def test_failed_purchase(self, db, qliro_service, status_service, purchase, student):
        order = _open_order(
            db,
            qliro_service,
            PaymentCorrelation(package_purchase_id=purchase.id),
            f"package_{purchase.id}",
        )

        status_service.apply_status_push(order.callback_token, _push(order, "Refused"))

        db.refresh(purchase)
        assert purchase.payment_status == PaymentStatus.FAILED.value
        assert db.query(UserCredit).filter_by(user_id=student.id).count() == 0
