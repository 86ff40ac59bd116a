import base64
import hashlib
import json
from unittest.mock import patch

import httpx
from pydantic import SecretStr
import pytest

from trafikskola.integrations.qliro_client import (
    QliroApiError,
    QliroClient,
    QliroConnectionError,
    QliroDuplicateOrderError,
    QliroTimeoutError,
    compute_auth_header,
)

BASE_URL = "https://pago.qit.nu/"
PAYLOAD = {"MerchantReference": "bk_abc", "Currency": "SEK"}


def _client(secret="s3cret") -> QliroClient:
    return QliroClient(api_key="key-1", api_secret=secret, base_url=BASE_URL, timeout=5)


def _response(status_code: int, body=None) -> httpx.Response:
    request = httpx.Request("POST", BASE_URL)
    if body is None:
        return httpx.Response(status_code, request=request)
    return httpx.Response(status_code, json=body, request=request)


@pytest.fixture
def http():
    with patch("trafikskola.integrations.qliro_client.httpx.Client") as client_cls:
        yield client_cls.return_value.__enter__.return_value


def test_auth_header_is_base64_sha256_of_body_and_secret():
    expected = base64.b64encode(hashlib.sha256(b'{"a":1}secret').digest()).decode()
    assert compute_auth_header('{"a":1}', "secret") == f"Qliro {expected}"


def test_create_order_signs_exact_body(http):
    http.request.return_value = _response(200, {"OrderId": 42, "PaymentLink": "https://pay/42"})

    result = _client(SecretStr("s3cret")).create_order(PAYLOAD)

    assert result["OrderId"] == 42
    method, url = http.request.call_args.args
    kwargs = http.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://pago.qit.nu/checkout/merchantapi/Orders"
    sent = kwargs["content"].decode("utf-8")
    assert json.loads(sent) == PAYLOAD
    assert kwargs["headers"]["Authorization"] == compute_auth_header(sent, "s3cret")
    assert kwargs["headers"]["x-api-key"] == "key-1"


def test_get_by_merchant_reference_quotes_path(http):
    http.request.return_value = _response(200, {"OrderId": 7})

    _client().get_order_by_merchant_reference("bk abc")

    assert http.request.call_args.args[1].endswith("/orders/merchantReference/bk%20abc")


def test_conflict_is_a_duplicate(http):
    http.request.return_value = _response(409, {"ErrorCode": "ORDER_ALREADY_EXISTS"})

    with pytest.raises(QliroDuplicateOrderError) as exc_info:
        _client().create_order(PAYLOAD)

    assert exc_info.value.merchant_reference == "bk_abc"
    assert exc_info.value.transient is False


def test_duplicate_error_code_on_bad_request(http):
    http.request.return_value = _response(400, {"ErrorCode": "MERCHANT_REFERENCE_ALREADY_EXISTS"})
    with pytest.raises(QliroDuplicateOrderError):
        _client().create_order(PAYLOAD)


@pytest.mark.parametrize("status_code,transient", [(500, True), (503, True), (429, True), (400, False)])
def test_api_errors_classify_transience(http, status_code, transient):
    http.request.return_value = _response(status_code, {"ErrorMessage": "nope"})

    with pytest.raises(QliroApiError) as exc_info:
        _client().get_order("1")

    assert exc_info.value.status_code == status_code
    assert exc_info.value.transient is transient


def test_timeout(http):
    http.request.side_effect = httpx.ReadTimeout("slow")

    with pytest.raises(QliroTimeoutError) as exc_info:
        _client().get_order("1")
    assert exc_info.value.transient is False


def test_connection_error(http):
    http.request.side_effect = httpx.ConnectError("refused")

    with pytest.raises(QliroConnectionError) as exc_info:
        _client().get_order("1")
    assert exc_info.value.transient is True


def test_missing_order_id(http):
    http.request.return_value = _response(200, {"PaymentLink": "https://pay"})
    with pytest.raises(QliroApiError):
        _client().create_order(PAYLOAD)
