# backend/trafikskola/integrations/qliro_client.py
"""Qliro One merchant API client.

Creates and fetches checkout orders. Every request is signed with
``Authorization: Qliro base64(sha256(body + api_secret))`` computed over the
exact bytes sent, plus an ``x-api-key`` header carrying the public key.

Failures surface as typed errors so callers can decide what to do:
timeouts, connectivity problems, duplicate-order rejections and other API
errors are distinct classes.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from typing import Any
from urllib.parse import quote
import uuid

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

# ErrorCode values the gateway uses when a merchant reference is already taken
DUPLICATE_ORDER_ERROR_CODES = frozenset(
    {
        "ORDER_ALREADY_EXISTS",
        "MERCHANT_REFERENCE_ALREADY_EXISTS",
        "DUPLICATE_MERCHANT_REFERENCE",
    }
)


class QliroError(RuntimeError):
    """Raised when the Qliro API cannot be reached or responds with an error."""

    transient = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        error_code: str | None = None,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details


class QliroTimeoutError(QliroError):
    """The request exceeded the client timeout."""


class QliroConnectionError(QliroError):
    """The API could not be reached (DNS, refused, reset)."""

    transient = True


class QliroApiError(QliroError):
    """The API answered with an error status."""

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return self.status_code is not None and (
            self.status_code >= 500 or self.status_code == 429
        )


class QliroDuplicateOrderError(QliroApiError):
    """Order creation was rejected because the merchant reference already exists."""

    def __init__(self, message: str, merchant_reference: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.merchant_reference = merchant_reference


def compute_auth_header(body: str, api_secret: str) -> str:
    digest = hashlib.sha256((body + api_secret).encode("utf-8")).digest()
    return f"Qliro {base64.b64encode(digest).decode('ascii')}"


def _parse_error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        parsed_body = response.json()
        if isinstance(parsed_body, dict):
            return parsed_body
        return {"raw": response.text[:500]}
    except ValueError:
        return {"raw": response.text[:500]}


class QliroClient:
    """HTTP client for the Qliro merchant API."""

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str | SecretStr,
        base_url: str,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._api_secret = (
            api_secret.get_secret_value() if isinstance(api_secret, SecretStr) else api_secret
        )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        body = json.dumps(json_body, separators=(",", ":")) if json_body is not None else ""
        headers = {
            "Authorization": compute_auth_header(body, self._api_secret),
            "x-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(
                    method,
                    url,
                    headers=headers,
                    content=body.encode("utf-8") if body else None,
                )
        except httpx.TimeoutException as exc:
            logger.error("Qliro API timeout for %s %s: %s", method, path, exc)
            raise QliroTimeoutError(
                f"Qliro API timed out after {self._timeout:.0f}s", status_code=None
            ) from exc
        except (httpx.ConnectError, httpx.NetworkError) as exc:
            logger.error("Qliro API unreachable for %s %s: %s", method, path, exc)
            raise QliroConnectionError(
                f"Qliro API unreachable: {exc}", status_code=None
            ) from exc
        except httpx.TransportError as exc:
            logger.error("Qliro API transport failure for %s %s: %s", method, path, exc)
            raise QliroError(f"Qliro API request failed: {exc}", status_code=None) from exc

        if response.status_code >= 400:
            error_body = _parse_error_body(response)
            error_code = error_body.get("ErrorCode") or error_body.get("errorCode")
            logger.error(
                "Qliro API error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                error_body,
            )
            message = f"Qliro API error: {response.status_code}"
            if response.status_code == 409 or error_code in DUPLICATE_ORDER_ERROR_CODES:
                reference = (json_body or {}).get("MerchantReference", "")
                raise QliroDuplicateOrderError(
                    message,
                    merchant_reference=reference,
                    status_code=response.status_code,
                    error_code=error_code,
                    details=error_body,
                )
            raise QliroApiError(
                message,
                status_code=response.status_code,
                error_code=error_code,
                details=error_body,
            )

        if not response.content:
            return {}
        try:
            parsed = response.json()
        except ValueError as exc:
            raise QliroApiError(
                "Qliro API returned invalid JSON",
                status_code=response.status_code,
                details={"raw": response.text[:500]},
            ) from exc
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    def create_order(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a checkout order; returns at least ``OrderId`` and ``PaymentLink``."""
        result = self._request("POST", "/checkout/merchantapi/Orders", json_body=payload)
        if not result.get("OrderId"):
            raise QliroApiError("Qliro did not return an OrderId", details=result)
        return result

    def get_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/checkout/merchantapi/orders/{quote(str(order_id))}")

    def get_order_by_merchant_reference(self, merchant_reference: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/checkout/merchantapi/orders/merchantReference/{quote(merchant_reference)}",
        )


class FakeQliroClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, list[QliroError]] = {}
        self._orders: dict[str, dict[str, Any]] = {}

    def set_error(self, method: str, error: QliroError, *, times: int = 1) -> None:
        """Inject a method-specific error raised on the next ``times`` calls."""
        self._errors.setdefault(method, []).extend([error] * times)

    def clear_errors(self) -> None:
        self._errors.clear()

    def _raise_if_injected(self, method: str) -> None:
        queued = self._errors.get(method)
        if queued:
            raise queued.pop(0)

    def calls(self, method: str) -> list[dict[str, Any]]:
        return [call for call in self._calls if call["method"] == method]

    def add_remote_order(self, merchant_reference: str, **fields: Any) -> dict[str, Any]:
        """Seed an order that exists remotely but not locally."""
        order_id = fields.pop("OrderId", str(uuid.uuid4().int)[:10])
        order = {
            "OrderId": order_id,
            "MerchantReference": merchant_reference,
            "PaymentLink": f"https://fake.qliro.test/checkout/{order_id}",
            "Status": "InProcess",
            **fields,
        }
        self._orders[str(order_id)] = order
        return order

    def create_order(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._calls.append({"method": "create_order", "payload": payload})
        self._raise_if_injected("create_order")
        return dict(self.add_remote_order(payload["MerchantReference"]))

    def get_order(self, order_id: str) -> dict[str, Any]:
        self._calls.append({"method": "get_order", "order_id": order_id})
        self._raise_if_injected("get_order")
        order = self._orders.get(str(order_id))
        if order is None:
            raise QliroApiError("Qliro API error: 404", status_code=404)
        return dict(order)

    def get_order_by_merchant_reference(self, merchant_reference: str) -> dict[str, Any]:
        self._calls.append(
            {"method": "get_order_by_merchant_reference", "merchant_reference": merchant_reference}
        )
        self._raise_if_injected("get_order_by_merchant_reference")
        for order in self._orders.values():
            if order["MerchantReference"] == merchant_reference:
                return dict(order)
        raise QliroApiError("Qliro API error: 404", status_code=404)
