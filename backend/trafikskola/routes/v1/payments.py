# backend/trafikskola/routes/v1/payments.py
"""
Payment routes - API v1

Endpoints:
    POST /qliro/checkout - Get or create a Qliro checkout for a booking,
        handledar booking or package purchase
    POST /qliro/checkout-push?token= - Qliro status push (callback token)
    POST /qliro/webhook - Signed Qliro webhook (Qliro-Signature header)
"""

import asyncio
from decimal import Decimal
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import ValidationError

from ...api.dependencies import get_payment_status_service, get_qliro_service
from ...auth import get_current_user_optional
from ...core.config import settings
from ...core.enums import PaymentStatus
from ...core.exceptions import (
    DomainException,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)
from ...integrations.qliro_client import QliroError
from ...models.user import User
from ...repositories.factory import RepositoryFactory
from ...schemas.payments import (
    CheckoutRequest,
    CheckoutResponse,
    QliroStatusPush,
    StatusPushResponse,
)
from ...services.payment_status_service import PaymentStatusService
from ...services.qliro_service import (
    CheckoutCustomer,
    GatewayDisabledError,
    PaymentCorrelation,
    QliroService,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    raise exc.to_http_exception()


def _gateway_http_error(exc: QliroError) -> HTTPException:
    if isinstance(exc, GatewayDisabledError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Card and invoice payments are not available", "code": "payment-gateway-disabled"},
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": "Payment provider unavailable, please try again", "code": "payment-gateway-error"},
    )


@router.post("/qliro/checkout", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    qliro_service: QliroService = Depends(get_qliro_service),
) -> CheckoutResponse:
    """Start (or resume) the Qliro checkout for an unpaid booking or purchase."""
    db = qliro_service.db
    customer: Optional[CheckoutCustomer] = None
    if current_user is not None:
        customer = CheckoutCustomer(
            email=current_user.email,
            first_name=current_user.first_name,
            last_name=current_user.last_name,
            phone=current_user.phone,
        )

    try:
        correlation = PaymentCorrelation(
            booking_id=payload.booking_id,
            handledar_booking_id=payload.handledar_booking_id,
            package_purchase_id=payload.package_purchase_id,
        )
    except ValueError as e:
        handle_domain_exception(ValidationException(str(e), code="invalid-request"))
    if correlation.is_empty:
        handle_domain_exception(
            ValidationException("Nothing to pay for", code="missing-fields")
        )

    amount: Decimal
    if payload.booking_id:
        booking = RepositoryFactory.create_booking_repository(db).get_by_id(payload.booking_id)
        if booking is None or booking.is_deleted or booking.is_cancelled:
            handle_domain_exception(
                NotFoundException("Booking not found", code="not-found")
                if booking is None
                else ValidationException("Booking is no longer available", code="not-available")
            )
        paid = booking.payment_status == PaymentStatus.PAID.value
        amount, reference = booking.total_price, f"booking_{booking.id}"
        description = f"Körlektion {booking.scheduled_date.isoformat()}"
        return_path = f"/booking/confirmation/{booking.id}"
    elif payload.handledar_booking_id:
        hb = RepositoryFactory.create_handledar_repository(db).get_booking(
            payload.handledar_booking_id
        )
        if hb is None:
            handle_domain_exception(NotFoundException("Booking not found", code="not-found"))
        paid = hb.payment_status == PaymentStatus.PAID.value
        amount, reference = hb.price, f"handledar_{hb.id}"
        description = "Handledarutbildning"
        return_path = f"/handledar/confirmation/{hb.id}"
    else:
        purchase = RepositoryFactory.create_package_repository(db).get_purchase(
            payload.package_purchase_id
        )
        if purchase is None:
            handle_domain_exception(NotFoundException("Purchase not found", code="not-found"))
        paid = purchase.payment_status == PaymentStatus.PAID.value
        amount, reference = purchase.price_paid, f"package_{purchase.id}"
        description = "Lektionspaket"
        return_path = f"/packages/confirmation/{purchase.id}"

    if paid:
        handle_domain_exception(ValidationException("Already paid", code="not-available"))

    try:
        result = qliro_service.get_or_create_checkout(
            amount=amount,
            reference=reference,
            description=description,
            return_url=payload.return_url or f"{settings.public_url}{return_path}",
            correlation=correlation,
            customer=customer,
        )
    except QliroError as e:
        logger.warning(f"Qliro checkout failed: {str(e)}", extra={"reference": reference})
        raise _gateway_http_error(e)

    return CheckoutResponse(
        checkout_id=result.checkout_id,
        checkout_url=result.checkout_url,
        merchant_reference=result.merchant_reference,
        is_existing=result.is_existing,
    )


@router.post("/qliro/checkout-push", response_model=StatusPushResponse, response_model_by_alias=True)
def checkout_status_push(
    push: QliroStatusPush,
    token: str = Query(..., min_length=8),
    service: PaymentStatusService = Depends(get_payment_status_service),
) -> StatusPushResponse:
    try:
        service.apply_status_push(token, push)
    except DomainException as e:
        handle_domain_exception(e)
    return StatusPushResponse()


@router.post("/qliro/webhook", response_model=StatusPushResponse, response_model_by_alias=True)
async def qliro_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="Qliro-Signature"),
    service: PaymentStatusService = Depends(get_payment_status_service),
) -> StatusPushResponse:
    """Signed webhook; the signature covers the raw body bytes."""
    raw_body = await request.body()
    try:
        push = QliroStatusPush.model_validate_json(raw_body)
    except ValidationError:
        # Signature first: an unsigned garbage body must not learn about our schema
        if not service.qliro_service.verify_webhook_signature(signature, raw_body):
            handle_domain_exception(
                UnauthorizedException("Invalid webhook signature", code="unauthorized")
            )
        handle_domain_exception(ValidationException("Invalid webhook payload", code="invalid-request"))

    try:
        await asyncio.to_thread(service.apply_webhook, signature, raw_body, push)
    except DomainException as e:
        handle_domain_exception(e)
    return StatusPushResponse()
