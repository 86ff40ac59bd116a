from unittest.mock import MagicMock

from trafikskola.services.notification_service import NotificationService, NotificationTrigger


def test_without_sender_events_are_recorded():
    service = NotificationService()

    assert service.dispatch(NotificationTrigger.BOOKING_CONFIRMED, {"booking_id": "B1"}) is True

    (record,) = service.dispatched
    assert record.trigger == NotificationTrigger.BOOKING_CONFIRMED
    assert record.context["booking_id"] == "B1"
    assert "admin_email" in record.context


def test_transient_sender_failures_are_retried():
    sender = MagicMock()
    sender.send.side_effect = [ConnectionError("smtp"), None]
    service = NotificationService(sender=sender, backoff_seconds=0)

    assert service.dispatch(NotificationTrigger.PAYMENT_CONFIRMED, {"booking_id": "B1"}) is True
    assert sender.send.call_count == 2


def test_failed_delivery_is_reported_not_raised():
    sender = MagicMock()
    sender.send.side_effect = ConnectionError("smtp")
    service = NotificationService(sender=sender, backoff_seconds=0)

    assert service.dispatch(NotificationTrigger.PAYMENT_REJECTED, {"booking_id": "B1"}) is False
    assert sender.send.call_count == 3
    assert service.dispatched[0].delivered is False


def test_unknown_trigger_is_still_dispatched():
    service = NotificationService()
    service.dispatch("something_new", {})
    assert service.triggers() == ["something_new"]
