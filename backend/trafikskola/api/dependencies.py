# backend/trafikskola/api/dependencies.py
"""
Service layer dependencies for dependency injection.

Application-wide collaborators (gateway settings provider, Qliro client
factory, notification sender) live on ``app.state`` and are set up in
``create_app``; request-scoped services are built from them here.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.booking_service import BookingService
from ..services.gateway_settings import GatewaySettings, GatewaySettingsProvider
from ..services.notification_service import NotificationSender, NotificationService
from ..services.payment_status_service import PaymentStatusService
from ..services.qliro_service import QliroClientProtocol, QliroService

logger = logging.getLogger(__name__)

QliroClientFactory = Callable[[GatewaySettings], QliroClientProtocol]


def get_gateway_settings_provider(request: Request) -> GatewaySettingsProvider:
    return request.app.state.gateway_settings


def get_qliro_client_factory(request: Request) -> Optional[QliroClientFactory]:
    return getattr(request.app.state, "qliro_client_factory", None)


def get_notification_service(
    request: Request, db: Session = Depends(get_db)
) -> NotificationService:
    sender: Optional[NotificationSender] = getattr(request.app.state, "notification_sender", None)
    return NotificationService(db, sender)


def get_qliro_service(
    db: Session = Depends(get_db),
    provider: GatewaySettingsProvider = Depends(get_gateway_settings_provider),
    client_factory: Optional[QliroClientFactory] = Depends(get_qliro_client_factory),
) -> QliroService:
    return QliroService(db, provider, client_factory=client_factory)


def get_booking_service(
    db: Session = Depends(get_db),
    notification_service: NotificationService = Depends(get_notification_service),
    qliro_service: QliroService = Depends(get_qliro_service),
) -> BookingService:
    return BookingService(
        db, notification_service=notification_service, qliro_service=qliro_service
    )


def get_payment_status_service(
    db: Session = Depends(get_db),
    qliro_service: QliroService = Depends(get_qliro_service),
    notification_service: NotificationService = Depends(get_notification_service),
) -> PaymentStatusService:
    return PaymentStatusService(db, qliro_service, notification_service=notification_service)
