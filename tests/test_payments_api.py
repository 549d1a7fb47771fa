from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal

from billing import BillingRepository, ConfigurationError, GatewayPayment

from conftest import TEST_WEBHOOK_SECRET, sign


def _subscribe(api, user_id: str, plan_id: str, payment_id: str, addon_ids=()) -> dict:
    headers = api.headers(user_id)
    order = api.client.post(
        "/payments/subscription-orders",
        headers=headers,
        json={"plan_id": plan_id, "addon_ids": list(addon_ids)},
    )
    assert order.status_code == 200, order.text
    order_id = order.json()["gateway_order_id"]
    verified = api.client.post(
        "/payments/subscription-orders/verify",
        headers=headers,
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": sign(order_id, payment_id),
        },
    )
    assert verified.status_code == 200, verified.text
    return verified.json()


def _webhook(api, payload: dict, *, secret: str = TEST_WEBHOOK_SECRET, event_id: str = "evt_1"):
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return api.client.post(
        "/payments/webhooks/razorpay",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature,
            "X-Razorpay-Event-Id": event_id,
        },
    )


def test_catalog_and_purchase_flow(api) -> None:
    catalog = api.catalog
    headers = api.headers(catalog.user_id)

    plans = api.client.get("/billing/plans", headers=headers)
    assert plans.status_code == 200, plans.text
    by_id = {row["id"]: row for row in plans.json()}
    assert Decimal(str(by_id[catalog.basic_plan_id]["price"])) == Decimal("199")
    assert Decimal(str(by_id[catalog.premium_plan_id]["yearly_price"])) == Decimal("19990")

    addons = api.client.get("/billing/addons", headers=headers)
    assert [row["id"] for row in addons.json()] == [catalog.photo_addon_id, catalog.seo_addon_id, catalog.crm_addon_id]

    missing = api.client.get("/billing/subscription/me", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "NOT_FOUND"

    order = api.client.post(
        "/payments/subscription-orders",
        headers=headers,
        json={"plan_id": catalog.basic_plan_id, "addon_ids": [catalog.seo_addon_id], "total_amount": "1698.00"},
    )
    assert order.status_code == 200, order.text
    placed = order.json()
    assert Decimal(str(placed["amount"])) == Decimal("1698")
    assert placed["key_id"] == "rzp_test_fake"
    assert placed["payment_type"] == "subscription_purchase"

    order_id = placed["gateway_order_id"]
    pending = api.client.get(f"/payments/orders/{order_id}/status", headers=headers)
    assert pending.json()["status"] == "pending"

    verified = api.client.post(
        "/payments/subscription-orders/verify",
        headers=headers,
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_api00001",
            "razorpay_signature": sign(order_id, "pay_api00001"),
            "plan_id": catalog.basic_plan_id,
            "addon_ids": [catalog.seo_addon_id],
        },
    )
    assert verified.status_code == 200, verified.text
    body = verified.json()
    assert body["status"] == "paid"
    assert body["already_processed"] is False
    assert body["subscription"]["plan_id"] == catalog.basic_plan_id
    assert body["subscription"]["status"] == "active"
    assert [row["addon_id"] for row in body["subscription"]["addons"]] == [catalog.seo_addon_id]

    current = api.client.get("/billing/subscription/me", headers=headers)
    assert current.status_code == 200, current.text
    assert current.json()["id"] == body["subscription"]["id"]

    paid = api.client.get(f"/payments/orders/{order_id}/status", headers=headers)
    assert paid.json()["status"] == "paid"
    assert paid.json()["gateway_payment_id"] == "pay_api00001"
    hidden = api.client.get(f"/payments/orders/{order_id}/status", headers=api.headers(catalog.other_user_id))
    assert hidden.status_code == 404
    admin_view = api.client.get(f"/payments/orders/{order_id}/status", headers=api.headers(catalog.admin_id, "admin"))
    assert admin_view.status_code == 200

    addon_order = api.client.post("/payments/addon-orders", headers=headers, json={"addon_ids": [catalog.crm_addon_id]})
    assert addon_order.status_code == 200, addon_order.text
    addon_order_id = addon_order.json()["gateway_order_id"]
    merged = api.client.post(
        "/payments/addon-orders/verify",
        headers=headers,
        json={
            "gateway_order_id": addon_order_id,
            "gateway_payment_id": "pay_api00002",
            "signature": sign(addon_order_id, "pay_api00002"),
        },
    )
    assert merged.status_code == 200, merged.text
    assert merged.json()["granted_addon_ids"] == [catalog.crm_addon_id]
    assert Decimal(str(merged.json()["subscription"]["amount"])) == Decimal("2697")


def test_requests_without_token_are_rejected(api) -> None:
    response = api.client.get("/billing/plans")
    assert response.status_code == 401
    payload = response.json()
    assert payload["error_code"] == "UNAUTHORIZED"
    assert payload["hint"] == "Send a valid Bearer token."
    assert payload["trace_id"]

    bad = api.client.get("/billing/plans", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


def test_bad_signature_keeps_payment_pending(api) -> None:
    catalog = api.catalog
    headers = api.headers(catalog.user_id)
    order = api.client.post("/payments/subscription-orders", headers=headers, json={"plan_id": catalog.basic_plan_id})
    order_id = order.json()["gateway_order_id"]

    response = api.client.post(
        "/payments/subscription-orders/verify",
        headers=headers,
        json={"razorpay_order_id": order_id, "razorpay_payment_id": "pay_forged01", "razorpay_signature": "0" * 64},
    )
    assert response.status_code == 400
    payload = response.json()
    assert payload["error_code"] == "SIGNATURE_MISMATCH"
    assert payload["hint"]
    assert sign(order_id, "pay_forged01") not in response.text

    status = api.client.get(f"/payments/orders/{order_id}/status", headers=headers)
    assert status.json()["status"] == "pending"


def test_verify_request_validation(api) -> None:
    headers = api.headers(api.catalog.user_id)
    response = api.client.post(
        "/payments/subscription-orders/verify",
        headers=headers,
        json={"razorpay_order_id": "order/../x", "razorpay_payment_id": "pay_1", "razorpay_signature": "abc"},
    )
    assert response.status_code == 422


def test_second_subscription_is_refused(api) -> None:
    catalog = api.catalog
    _subscribe(api, catalog.user_id, catalog.basic_plan_id, "pay_first001")

    response = api.client.post(
        "/payments/subscription-orders",
        headers=api.headers(catalog.user_id),
        json={"plan_id": catalog.premium_plan_id},
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ACTIVE_SUBSCRIPTION_EXISTS"
    assert len(api.gateway.orders) == 1


def test_no_new_addons_at_order_and_at_verification(api) -> None:
    catalog = api.catalog
    headers = api.headers(catalog.user_id)
    _subscribe(api, catalog.user_id, catalog.basic_plan_id, "pay_owner001", addon_ids=[catalog.photo_addon_id])

    owned = api.client.post("/payments/addon-orders", headers=headers, json={"addon_ids": [catalog.photo_addon_id]})
    assert owned.status_code == 409
    assert owned.json()["error_code"] == "NO_NEW_ADDONS"

    first = api.client.post("/payments/addon-orders", headers=headers, json={"addon_ids": [catalog.crm_addon_id]})
    second = api.client.post("/payments/addon-orders", headers=headers, json={"addon_ids": [catalog.crm_addon_id]})
    first_id = first.json()["gateway_order_id"]
    second_id = second.json()["gateway_order_id"]

    ok = api.client.post(
        "/payments/addon-orders/verify",
        headers=headers,
        json={"gateway_order_id": first_id, "gateway_payment_id": "pay_crm00001", "signature": sign(first_id, "pay_crm00001")},
    )
    assert ok.status_code == 200, ok.text

    duplicate = api.client.post(
        "/payments/addon-orders/verify",
        headers=headers,
        json={"gateway_order_id": second_id, "gateway_payment_id": "pay_crm00002", "signature": sign(second_id, "pay_crm00002")},
    )
    assert duplicate.status_code == 409
    payload = duplicate.json()
    assert payload["error_code"] == "NO_NEW_ADDONS"
    assert payload["details"]["payment_status"] == "paid"

    # The capture is committed even though nothing was granted.
    status = api.client.get(f"/payments/orders/{second_id}/status", headers=headers)
    assert status.json()["status"] == "paid"


def test_webhook_capture_and_rejection(api) -> None:
    catalog = api.catalog
    order = api.client.post(
        "/payments/subscription-orders",
        headers=api.headers(catalog.other_user_id),
        json={"plan_id": catalog.basic_plan_id},
    )
    order_id = order.json()["gateway_order_id"]
    event = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_hook0001", "order_id": order_id, "status": "captured"}}},
    }

    forged = _webhook(api, event, secret="wrong-secret", event_id="evt_forged")
    assert forged.status_code == 400
    assert forged.json()["error_code"] == "SIGNATURE_MISMATCH"

    accepted = _webhook(api, event, event_id="evt_ok")
    assert accepted.status_code == 200, accepted.text
    assert accepted.json()["status"] == "processed"
    assert accepted.json()["subscription_id"]

    replay = _webhook(api, event, event_id="evt_ok")
    assert replay.json()["status"] == "already_processed"

    with api.scope() as session:
        repo = BillingRepository(session)
        rejected = repo.list_audit_logs(outcome="rejected")
        assert [row.gateway_event_id for row in rejected] == ["evt_forged"]
        assert rejected[0].signature_valid is False
        assert repo.get_active_subscription(catalog.other_user_id) is not None


def test_admin_endpoints_require_admin_role(api) -> None:
    user_headers = api.headers(api.catalog.user_id)
    assert api.client.get("/admin/payments/stats", headers=user_headers).status_code == 403
    assert api.client.post("/admin/payments/expire", headers=user_headers).status_code == 403
    refund = api.client.post("/admin/payments/pay_any00001/refund", headers=user_headers, json={})
    assert refund.status_code == 403
    payload = refund.json()
    assert payload["error_code"] == "NOT_ADMIN"
    assert payload["message"] == "admin role required"
    assert payload["hint"]
    assert payload["trace_id"] == refund.headers["X-Trace-Id"]


def test_admin_refund_stats_and_sweep(api) -> None:
    catalog = api.catalog
    admin = api.headers(catalog.admin_id, "admin")
    _subscribe(api, catalog.user_id, catalog.basic_plan_id, "pay_refund01", addon_ids=[catalog.seo_addon_id])

    partial = api.client.post("/admin/payments/pay_refund01/refund", headers=admin, json={"amount": "698.00"})
    assert partial.status_code == 200, partial.text
    assert Decimal(str(partial.json()["remaining"])) == Decimal("1000")
    assert api.gateway.refunds[-1]["notes"]["refunded_by"] == catalog.admin_id

    too_much = api.client.post("/admin/payments/pay_refund01/refund", headers=admin, json={"amount": "1000.01"})
    assert too_much.status_code == 400
    assert too_much.json()["error_code"] == "VALIDATION_FAILED"

    stats = api.client.get("/admin/payments/stats", headers=admin)
    assert stats.status_code == 200, stats.text
    payload = stats.json()
    assert payload["payments"]["paid"] == 1
    assert payload["subscriptions"]["active"] == 1
    assert Decimal(str(payload["total_revenue"])) == Decimal("1698")
    assert Decimal(str(payload["total_refunded"])) == Decimal("698")

    sweep = api.client.post("/admin/payments/expire", headers=admin)
    assert sweep.status_code == 200, sweep.text
    assert sweep.json() == {"cancelled_payments": 0, "expired_subscriptions": 0}


def test_admin_gateway_lookup(api) -> None:
    admin = api.headers(api.catalog.admin_id, "admin")
    api.gateway.payments["pay_lookup01"] = GatewayPayment(
        id="pay_lookup01",
        status="captured",
        amount=Decimal("199.00"),
        currency="INR",
        order_id="order_000099",
    )
    found = api.client.get("/admin/payments/gateway/pay_lookup01", headers=admin)
    assert found.status_code == 200, found.text
    assert found.json()["status"] == "captured"

    missing = api.client.get("/admin/payments/gateway/pay_nothere1", headers=admin)
    assert missing.status_code == 502
    assert missing.json()["error_code"] == "GATEWAY_ERROR"


def test_admin_plan_price_change(api) -> None:
    catalog = api.catalog
    admin = api.headers(catalog.admin_id, "admin")

    changed = api.client.post(
        f"/admin/billing/plans/{catalog.basic_plan_id}/price",
        headers=admin,
        json={"price": "249.00", "reason": "annual revision"},
    )
    assert changed.status_code == 200, changed.text
    assert Decimal(str(changed.json()["previous_price"])) == Decimal("199")
    assert changed.json()["changed_by"] == catalog.admin_id

    history = api.client.get(f"/admin/billing/plans/{catalog.basic_plan_id}/price-history", headers=admin)
    # The first row is the price recorded when the plan was created.
    assert sorted(Decimal(str(row["price"])) for row in history.json()) == [Decimal("199"), Decimal("249")]

    order = api.client.post(
        "/payments/subscription-orders",
        headers=api.headers(catalog.user_id),
        json={"plan_id": catalog.basic_plan_id},
    )
    assert Decimal(str(order.json()["amount"])) == Decimal("249")

    unknown = api.client.get("/admin/billing/plans/no-such-plan/price-history", headers=admin)
    assert unknown.status_code == 404


def test_unconfigured_gateway_is_reported(api, monkeypatch) -> None:
    import main

    def _unconfigured(settings=None):
        raise ConfigurationError("payment gateway is not configured")

    main.app.dependency_overrides.pop(main.get_payment_gateway, None)
    monkeypatch.setattr(main, "build_payment_gateway", _unconfigured)

    response = api.client.post(
        "/payments/subscription-orders",
        headers=api.headers(api.catalog.user_id),
        json={"plan_id": api.catalog.basic_plan_id},
    )
    assert response.status_code == 500
    assert response.json()["error_code"] == "GATEWAY_NOT_CONFIGURED"
    assert "key_secret" not in response.text


def test_missing_identity_uses_the_error_envelope(monkeypatch, api) -> None:
    import main

    # With auth off the middleware attaches an anonymous identity; strip it to hit the dependency.
    monkeypatch.setattr(main, "_anonymous_identity", lambda: None)
    monkeypatch.setattr(main, "AUTH_ENABLED", False)
    response = api.client.get("/billing/subscription/me")
    assert response.status_code == 401
    payload = response.json()
    assert payload["error_code"] == "UNAUTHORIZED"
    assert payload["hint"] == "Send a valid Bearer token."
    assert "detail" not in payload
