from __future__ import annotations

import base64
import json
from decimal import Decimal

import httpx
import pytest

from billing import (
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    RazorpayGateway,
    ValidationError,
    build_payment_gateway,
)

KEY_ID = "rzp_test_key"
KEY_SECRET = "very-secret-key"


def _gateway(handler) -> RazorpayGateway:
    return RazorpayGateway(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        api_base_url="https://gateway.test/v1",
        transport=httpx.MockTransport(handler),
    )


def test_create_order_sends_minor_units_with_basic_auth() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"id": "order_abc123", "amount": 169800, "currency": "INR", "receipt": "sub_u1", "status": "created"},
        )

    order = _gateway(handler).create_order(
        amount=Decimal("1698.00"),
        currency="inr",
        receipt="sub_u1",
        notes={"plan_id": "basic", "addon_ids": ["a1", "a2"], "empty": None},
    )

    assert seen["method"] == "POST"
    assert seen["url"] == "https://gateway.test/v1/orders"
    expected_auth = base64.b64encode(f"{KEY_ID}:{KEY_SECRET}".encode()).decode()
    assert seen["auth"] == f"Basic {expected_auth}"
    assert seen["body"] == {
        "amount": 169800,
        "currency": "INR",
        "receipt": "sub_u1",
        "notes": {"plan_id": "basic", "addon_ids": "a1,a2"},
    }
    assert order.id == "order_abc123"
    assert order.amount == Decimal("1698.00")
    assert order.currency == "INR"


def test_gateway_error_does_not_leak_credentials() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}})

    with pytest.raises(GatewayError) as excinfo:
        _gateway(handler).create_order(amount=Decimal("0.50"), currency="INR", receipt="r1")

    assert excinfo.value.message == "payment gateway returned 400: amount too small"
    assert excinfo.value.details == {"gateway_status": 400}
    assert KEY_SECRET not in str(excinfo.value)


def test_timeout_maps_to_gateway_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeout):
        _gateway(handler).create_order(amount=Decimal("199"), currency="INR", receipt="r1")


def test_connection_failure_maps_to_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as excinfo:
        _gateway(handler).fetch_payment("pay_abc123")
    assert not isinstance(excinfo.value, GatewayTimeout)
    assert "ConnectError" in excinfo.value.message


def test_non_json_success_is_a_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(GatewayError, match="invalid JSON"):
        _gateway(handler).create_order(amount=Decimal("199"), currency="INR", receipt="r1")


def test_fetch_payment_rejects_malformed_ids_without_calling_out() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(ValidationError):
        _gateway(handler).fetch_payment("../orders")
    assert calls == []


def test_fetch_payment_normalizes_amounts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/pay_abc123"
        return httpx.Response(
            200,
            json={
                "id": "pay_abc123",
                "status": "captured",
                "amount": 19900,
                "currency": "INR",
                "order_id": "order_abc123",
                "method": "card",
                "created_at": 1792411200,
            },
        )

    payment = _gateway(handler).fetch_payment("pay_abc123")
    assert payment.status == "captured"
    assert payment.amount == Decimal("199.00")
    assert payment.order_id == "order_abc123"
    assert payment.created_at == 1792411200


def test_refund_sends_minor_units() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"id": "rfnd_1", "payment_id": "pay_abc123", "amount": 100050, "currency": "INR", "status": "processed"},
        )

    refund = _gateway(handler).refund("pay_abc123", amount=Decimal("1000.50"), notes={"reason": "duplicate"})
    assert seen["path"] == "/v1/payments/pay_abc123/refund"
    assert seen["body"] == {"amount": 100050, "notes": {"reason": "duplicate"}}
    assert refund.id == "rfnd_1"
    assert refund.amount == Decimal("1000.50")

    full = _gateway(handler).refund("pay_abc123")
    assert full.status == "processed"
    assert "amount" not in seen["body"]


def test_build_payment_gateway_requires_credentials() -> None:
    with pytest.raises(ConfigurationError):
        build_payment_gateway({})
    with pytest.raises(ConfigurationError):
        build_payment_gateway({"key_id": "rzp_test_key", "key_secret": "  "})

    gateway = build_payment_gateway({"key_id": KEY_ID, "key_secret": KEY_SECRET, "timeout_seconds": 5})
    assert isinstance(gateway, RazorpayGateway)
    assert gateway.key_id == KEY_ID
    assert gateway.name == "razorpay"
