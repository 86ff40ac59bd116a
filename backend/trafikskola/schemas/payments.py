# backend/trafikskola/schemas/payments.py
"""Payment endpoint schemas (Qliro checkout and status pushes)."""

from typing import Optional

from pydantic import ConfigDict, Field

from ._strict_base import StrictModel, StrictRequestModel


class CheckoutRequest(StrictRequestModel):
    booking_id: Optional[str] = None
    handledar_booking_id: Optional[str] = None
    package_purchase_id: Optional[str] = None
    return_url: Optional[str] = None


class CheckoutResponse(StrictModel):
    checkout_id: str
    checkout_url: Optional[str] = None
    merchant_reference: str
    is_existing: bool


class QliroStatusPush(StrictRequestModel):
    """Status push body; Qliro uses PascalCase keys and may add fields."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[int | str] = Field(default=None, alias="OrderId")
    merchant_reference: Optional[str] = Field(default=None, alias="MerchantReference")
    status: str = Field(alias="Status")
    payment_transaction_id: Optional[int | str] = Field(
        default=None, alias="PaymentTransactionId"
    )


class StatusPushResponse(StrictModel):
    """Acknowledgement body Qliro expects for status pushes."""

    model_config = ConfigDict(populate_by_name=True)

    callback_response: str = Field(default="received", alias="CallbackResponse")
