# backend/trafikskola/services/qliro_service.py
"""
Qliro checkout order reconciliation.

``get_or_create_checkout`` is idempotent per logical reference:

1. an existing local order for the booking / handledar booking / package
   purchase is re-fetched and returned;
2. the logical reference is sanitized into a stable merchant reference and
   looked up again locally (covers lost correlation links);
3. only then is a remote order created. When the gateway rejects it as a
   duplicate (two racing requests both got past the lookups) the loser
   recovers the winner's order by merchant reference instead of failing.

Remote calls go through ``RetryPolicy``: exponential backoff for transient
failures, while a timeout is raised straight to the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
import hashlib
import hmac
import logging
import re
import secrets
import time
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar, Union

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.enums import PaymentOrderStatus
from ..core.exceptions import RepositoryException, ServiceException
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.qliro_client import (
    QliroClient,
    QliroDuplicateOrderError,
    QliroError,
)
from ..models.payment_order import QliroOrder
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .gateway_settings import GatewaySettings, GatewaySettingsProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

MERCHANT_REFERENCE_MAX_LENGTH = 25
VAT_RATE = Decimal("25")
_DISALLOWED_REFERENCE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_KIND_PREFIXES = {"booking": "bk", "handledar": "hd", "package": "pk", "order": "or"}

# Remote Status -> local order status
_REMOTE_STATUS_MAP = {
    "completed": PaymentOrderStatus.COMPLETED,
    "onhold": PaymentOrderStatus.ON_HOLD,
    "refused": PaymentOrderStatus.FAILED,
    "cancelled": PaymentOrderStatus.FAILED,
    "failed": PaymentOrderStatus.FAILED,
}


class GatewayDisabledError(QliroError):
    """Qliro is switched off or missing credentials in the payment settings."""


class QliroClientProtocol(Protocol):
    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def get_order(self, order_id: str) -> Dict[str, Any]:
        ...

    def get_order_by_merchant_reference(self, merchant_reference: str) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class PaymentCorrelation:
    """The local entity a checkout pays for; at most one field is set."""

    booking_id: Optional[str] = None
    handledar_booking_id: Optional[str] = None
    package_purchase_id: Optional[str] = None

    def __post_init__(self) -> None:
        if len([v for v in self.as_filters().values() if v]) > 1:
            raise ValueError("A checkout can only be linked to one entity")

    def as_filters(self) -> Dict[str, Optional[str]]:
        return {
            "booking_id": self.booking_id,
            "handledar_booking_id": self.handledar_booking_id,
            "package_purchase_id": self.package_purchase_id,
        }

    @property
    def is_empty(self) -> bool:
        return not any(self.as_filters().values())


@dataclass(frozen=True)
class CheckoutResult:
    checkout_id: str
    checkout_url: Optional[str]
    merchant_reference: str
    is_existing: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkoutId": self.checkout_id,
            "checkoutUrl": self.checkout_url,
            "merchantReference": self.merchant_reference,
            "isExisting": self.is_existing,
        }


@dataclass
class CheckoutCustomer:
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class RetryPolicy:
    """
    Exponential backoff for transient gateway failures.

    Delays double from ``backoff_seconds``. Errors that are not transient
    (timeouts, 4xx, duplicates) are raised on the first occurrence.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.qliro_retry_attempts,
            backoff_seconds=config.qliro_retry_backoff_seconds,
        )

    def run(self, operation: str, func: Callable[[], T]) -> T:
        for attempt in range(self.max_attempts):
            try:
                result = func()
                prometheus_metrics.record_gateway_request(operation, "success")
                return result
            except QliroError as e:
                prometheus_metrics.record_gateway_request(operation, type(e).__name__)
                if not e.transient:
                    raise
                if attempt < self.max_attempts - 1:
                    wait_time = self.backoff_seconds * (2**attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{self.max_attempts} failed for {operation}: "
                        f"{str(e)}. Retrying in {wait_time}s..."
                    )
                    self.sleep(wait_time)
                else:
                    logger.error(
                        f"All {self.max_attempts} attempts failed for {operation}: {str(e)}"
                    )
                    raise
        raise RuntimeError("Retry failed without capturing exception")


def reference_kind(reference: str) -> str:
    lowered = reference.lower()
    for kind in ("booking", "handledar", "package"):
        if lowered.startswith(kind):
            return kind
    return "order"


def sanitize_merchant_reference(reference: str, kind: Optional[str] = None) -> str:
    """
    Map a logical reference onto the gateway's merchant reference format.

    Only ``[A-Za-z0-9_-]`` is kept. References longer than 25 characters
    become ``<prefix>_<sha256 prefix>`` so the same input always yields the
    same output.
    """
    cleaned = _DISALLOWED_REFERENCE_CHARS.sub("", reference or "")
    if not cleaned:
        raise ValueError("Merchant reference is empty after sanitizing")
    if len(cleaned) <= MERCHANT_REFERENCE_MAX_LENGTH:
        return cleaned
    prefix = _KIND_PREFIXES.get(kind or reference_kind(cleaned), _KIND_PREFIXES["order"])
    digest = hashlib.sha256(reference.encode("utf-8")).hexdigest()
    return f"{prefix}_{digest[: MERCHANT_REFERENCE_MAX_LENGTH - len(prefix) - 1]}"


def map_remote_status(remote_status: Optional[str]) -> PaymentOrderStatus:
    if not remote_status:
        return PaymentOrderStatus.PENDING
    return _REMOTE_STATUS_MAP.get(remote_status.strip().lower(), PaymentOrderStatus.PENDING)


def _money(amount: Union[Decimal, float, int]) -> Decimal:
    return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class QliroService(BaseService):
    """Reconciles local checkout orders with Qliro."""

    def __init__(
        self,
        db: Session,
        settings_provider: GatewaySettingsProvider,
        *,
        client_factory: Optional[Callable[[GatewaySettings], QliroClientProtocol]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        config: Settings = default_settings,
    ):
        super().__init__(db)
        self.settings_provider = settings_provider
        self.client_factory = client_factory or self._default_client
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config)
        self.order_repository = RepositoryFactory.create_qliro_order_repository(db)

    @staticmethod
    def _default_client(gateway: GatewaySettings) -> QliroClient:
        return QliroClient(
            api_key=gateway.api_key,
            api_secret=gateway.api_secret,
            base_url=gateway.api_url,
            timeout=gateway.timeout_seconds,
        )

    def _load_settings(self) -> GatewaySettings:
        gateway = self.settings_provider.get()
        if not gateway.enabled:
            raise GatewayDisabledError("Qliro payments are disabled")
        if not gateway.api_key or not gateway.api_secret:
            raise GatewayDisabledError("Qliro credentials are not configured")
        return gateway

    @BaseService.measure_operation("get_or_create_checkout")
    def get_or_create_checkout(
        self,
        *,
        amount: Union[Decimal, float, int],
        reference: str,
        description: str,
        return_url: str,
        correlation: PaymentCorrelation,
        customer: Optional[CheckoutCustomer] = None,
    ) -> CheckoutResult:
        gateway = self._load_settings()
        client = self.client_factory(gateway)

        existing = self.order_repository.get_by_correlation(**correlation.as_filters())
        if existing is not None:
            refreshed = self._refresh_existing(client, existing)
            if refreshed is not None:
                self.log_operation(
                    "checkout_reused", order_id=existing.id, merchant_reference=existing.merchant_reference
                )
                return refreshed
            self.logger.warning(
                "Could not refresh existing Qliro order; continuing to create",
                extra={"order_id": existing.id},
            )

        merchant_reference = sanitize_merchant_reference(reference)

        by_reference = self.order_repository.get_by_merchant_reference(merchant_reference)
        if by_reference is not None:
            refreshed = self._refresh_existing(client, by_reference)
            return refreshed or self._result_from_order(by_reference, is_existing=True)

        callback_token = secrets.token_urlsafe(32)
        payload = self.build_order_payload(
            gateway,
            merchant_reference=merchant_reference,
            amount=amount,
            description=description,
            return_url=return_url,
            callback_token=callback_token,
            customer=customer,
        )

        try:
            created = self.retry_policy.run("create_order", lambda: client.create_order(payload))
        except QliroDuplicateOrderError as exc:
            self.logger.warning(
                "Qliro reported duplicate order; recovering by merchant reference",
                extra={"merchant_reference": merchant_reference},
            )
            return self._recover_duplicate(
                client, exc, merchant_reference, amount, correlation, gateway
            )

        remote_order_id = str(created["OrderId"])
        payment_link = created.get("PaymentLink")
        order = self._persist_order(
            remote_order_id=remote_order_id,
            merchant_reference=merchant_reference,
            amount=amount,
            payment_link=payment_link,
            correlation=correlation,
            gateway=gateway,
            callback_token=callback_token,
        )

        try:
            live = self.retry_policy.run("get_order", lambda: client.get_order(remote_order_id))
            live_link = live.get("PaymentLink")
            if live_link and live_link != payment_link:
                payment_link = live_link
                if order is not None:
                    self._save_order_changes(order, payment_link=live_link)
        except QliroError as exc:
            self.logger.warning(
                "Created Qliro order could not be re-fetched",
                extra={"qliro_order_id": remote_order_id, "error": str(exc)},
            )

        self.log_operation(
            "checkout_created",
            qliro_order_id=remote_order_id,
            merchant_reference=merchant_reference,
            **{k: v for k, v in correlation.as_filters().items() if v},
        )
        return CheckoutResult(
            checkout_id=remote_order_id,
            checkout_url=payment_link,
            merchant_reference=merchant_reference,
            is_existing=False,
        )

    def build_order_payload(
        self,
        gateway: GatewaySettings,
        *,
        merchant_reference: str,
        amount: Union[Decimal, float, int],
        description: str,
        return_url: str,
        callback_token: str,
        customer: Optional[CheckoutCustomer] = None,
    ) -> Dict[str, Any]:
        price_inc_vat = _money(amount)
        price_ex_vat = _money(price_inc_vat / (1 + VAT_RATE / 100))
        push_base = f"{gateway.public_url}/api/v1/payments/qliro"
        payload: Dict[str, Any] = {
            "MerchantApiKey": gateway.api_key,
            "MerchantReference": merchant_reference,
            "Currency": "SEK",
            "Country": "SE",
            "Language": "sv-se",
            "MerchantTermsUrl": f"{gateway.public_url}/villkor",
            "MerchantConfirmationUrl": return_url,
            "MerchantCheckoutStatusPushUrl": f"{push_base}/checkout-push?token={callback_token}",
            "MerchantOrderManagementStatusPushUrl": (
                f"{push_base}/checkout-push?token={callback_token}&source=om"
            ),
            "MerchantOrderValidationUrl": f"{push_base}/validate?token={callback_token}",
            "PaymentMethods": {
                "Include": list(gateway.payment_methods_include),
                "Exclude": list(gateway.payment_methods_exclude),
            },
            "OrderItems": [
                {
                    "MerchantReference": merchant_reference,
                    "Description": description[:200],
                    "Type": "Product",
                    "Quantity": 1,
                    "PricePerItemIncVat": float(price_inc_vat),
                    "PricePerItemExVat": float(price_ex_vat),
                    "VatRate": float(VAT_RATE),
                }
            ],
        }
        if customer is not None and (customer.email or customer.phone):
            payload["CustomerInformation"] = {
                "Email": customer.email,
                "MobileNumber": customer.phone,
                "Address": {
                    "FirstName": customer.first_name or "",
                    "LastName": customer.last_name or "",
                },
            }
        return payload

    def _result_from_order(self, order: QliroOrder, *, is_existing: bool) -> CheckoutResult:
        return CheckoutResult(
            checkout_id=order.qliro_order_id,
            checkout_url=order.payment_link,
            merchant_reference=order.merchant_reference,
            is_existing=is_existing,
        )

    def _refresh_existing(
        self, client: QliroClientProtocol, order: QliroOrder
    ) -> Optional[CheckoutResult]:
        """Re-fetch a known order; None when the gateway could not be asked."""
        try:
            remote = self.retry_policy.run(
                "get_order", lambda: client.get_order(order.qliro_order_id)
            )
        except QliroError as exc:
            self.logger.warning(
                "Failed to re-fetch Qliro order",
                extra={"qliro_order_id": order.qliro_order_id, "error": str(exc)},
            )
            return None

        changes: Dict[str, Any] = {"last_status_check": utc_now()}
        remote_link = remote.get("PaymentLink")
        if remote_link and remote_link != order.payment_link:
            changes["payment_link"] = remote_link
        if remote.get("Status"):
            changes["status"] = map_remote_status(remote["Status"]).value
        self._save_order_changes(order, **changes)
        return self._result_from_order(order, is_existing=True)

    def _recover_duplicate(
        self,
        client: QliroClientProtocol,
        error: QliroDuplicateOrderError,
        merchant_reference: str,
        amount: Union[Decimal, float, int],
        correlation: PaymentCorrelation,
        gateway: GatewaySettings,
    ) -> CheckoutResult:
        attempts = self.config.qliro_duplicate_recovery_attempts
        for attempt in range(attempts):
            local = self.order_repository.get_by_merchant_reference(merchant_reference)
            if local is not None:
                return self._result_from_order(local, is_existing=True)
            try:
                remote = self.retry_policy.run(
                    "get_order_by_merchant_reference",
                    lambda: client.get_order_by_merchant_reference(merchant_reference),
                )
            except QliroError as exc:
                self.logger.warning(
                    f"Duplicate recovery attempt {attempt + 1}/{attempts} failed: {exc}",
                    extra={"merchant_reference": merchant_reference},
                )
                if attempt < attempts - 1:
                    self.retry_policy.sleep(self.retry_policy.backoff_seconds * (2**attempt))
                continue

            remote_order_id = str(remote["OrderId"])
            self._persist_order(
                remote_order_id=remote_order_id,
                merchant_reference=merchant_reference,
                amount=amount,
                payment_link=remote.get("PaymentLink"),
                correlation=correlation,
                gateway=gateway,
                callback_token=None,
            )
            self.log_operation(
                "duplicate_order_recovered",
                qliro_order_id=remote_order_id,
                merchant_reference=merchant_reference,
            )
            return CheckoutResult(
                checkout_id=remote_order_id,
                checkout_url=remote.get("PaymentLink"),
                merchant_reference=merchant_reference,
                is_existing=True,
            )
        raise error

    def _persist_order(
        self,
        *,
        remote_order_id: str,
        merchant_reference: str,
        amount: Union[Decimal, float, int],
        payment_link: Optional[str],
        correlation: PaymentCorrelation,
        gateway: GatewaySettings,
        callback_token: Optional[str],
    ) -> Optional[QliroOrder]:
        """Store the local shadow; failures are logged since the remote order is live."""
        token_expiry = (
            utc_now() + timedelta(hours=self.config.qliro_callback_token_ttl_hours)
            if callback_token
            else None
        )
        try:
            with self.transaction():
                return self.order_repository.create(
                    qliro_order_id=remote_order_id,
                    merchant_reference=merchant_reference,
                    amount=_money(amount),
                    payment_link=payment_link,
                    status=PaymentOrderStatus.PENDING.value,
                    environment=gateway.environment,
                    callback_token=callback_token,
                    callback_token_expires_at=token_expiry,
                    **correlation.as_filters(),
                )
        except (ServiceException, RepositoryException) as exc:
            self.logger.warning(
                "Failed to persist Qliro order locally; remote order remains usable",
                extra={"qliro_order_id": remote_order_id, "error": str(exc)},
            )
            return None

    def _save_order_changes(self, order: QliroOrder, **changes: Any) -> None:
        try:
            with self.transaction():
                for key, value in changes.items():
                    setattr(order, key, value)
        except ServiceException as exc:
            self.logger.warning(
                "Failed to update cached Qliro order",
                extra={"order_id": order.id, "error": str(exc)},
            )

    def verify_webhook_signature(self, signature: Optional[str], raw_body: Union[bytes, str]) -> bool:
        """HMAC-SHA256 (hex) over the raw body with the shared webhook secret."""
        secret = self.settings_provider.get().webhook_secret
        if not secret or not signature:
            return False
        body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def find_order_for_callback(self, token: str, *, now: Optional[datetime] = None) -> Optional[QliroOrder]:
        """Resolve a push callback token to its order, ignoring expired tokens."""
        if not token:
            return None
        order = self.order_repository.get_by_callback_token(token)
        if order is None:
            return None
        if order.callback_token_expires_at is not None:
            now = ensure_utc(now or utc_now())
            if ensure_utc(order.callback_token_expires_at) <= now:
                self.logger.warning("Expired Qliro callback token used", extra={"order_id": order.id})
                return None
        return order

    @BaseService.measure_operation("expire_stale_orders")
    def expire_stale_orders(self, *, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now or utc_now()) - timedelta(hours=self.config.qliro_order_expiry_hours)
        with self.transaction():
            stale = self.order_repository.get_stale_pending(cutoff)
            for order in stale:
                order.status = PaymentOrderStatus.EXPIRED.value
        if stale:
            self.log_operation("expire_stale_orders", expired=len(stale))
        return len(stale)
