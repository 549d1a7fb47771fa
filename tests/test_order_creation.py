from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

import billing.orders as billing_orders
from billing import (
    ActiveSubscriptionExists,
    BillingRepository,
    Payment,
    GatewayError,
    NoNewAddons,
    NotFoundError,
    PaymentStatus,
    PaymentType,
    ValidationError,
    place_order,
    quote_subscription_order,
    session_scope,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_subscription_order_records_pending_payment(session_factory, catalog, gateway, order_subscription) -> None:
    placed = order_subscription(catalog.user_id, catalog.basic_plan_id, addon_ids=[catalog.seo_addon_id])

    assert placed.amount == Decimal("1698.00")
    assert placed.payment_type == PaymentType.SUBSCRIPTION_PURCHASE
    assert placed.key_id == "rzp_test_fake"
    assert placed.expires_at == NOW + timedelta(seconds=billing_orders.PAYMENT_ORDER_TTL_SECONDS)
    assert placed.addon_ids == (catalog.seo_addon_id,)

    assert len(gateway.orders) == 1
    sent = gateway.orders[0]
    assert sent["id"] == placed.gateway_order_id
    assert sent["amount"] == Decimal("1698.00")
    assert sent["notes"]["plan_id"] == catalog.basic_plan_id
    assert len(sent["receipt"]) <= billing_orders.RECEIPT_MAX_LENGTH

    with session_scope(session_factory) as session:
        payment = BillingRepository(session).get_payment_by_order_id(placed.gateway_order_id)
        assert payment.id == placed.payment_id
        assert payment.status == PaymentStatus.PENDING
        assert payment.user_id == catalog.user_id
        assert payment.plan_id == catalog.basic_plan_id
        assert payment.addon_ids == [catalog.seo_addon_id]
        assert payment.billing_cycle == "monthly"
        assert payment.metadata_json["plan_amount"] == "199.00"


def test_yearly_order_charges_ten_months(catalog, order_subscription) -> None:
    placed = order_subscription(catalog.user_id, catalog.premium_plan_id, billing_cycle="yearly")
    assert placed.amount == Decimal("19990.00")


def test_client_total_mismatch_charges_server_total(session_factory, catalog, gateway) -> None:
    def _quote(repo, current):
        return quote_subscription_order(
            repo,
            user_id=catalog.user_id,
            plan_id=catalog.basic_plan_id,
            client_total="1.00",
            now=current,
        )

    placed = place_order(gateway, _quote, scope=lambda: session_scope(session_factory), now=NOW)
    assert placed.amount == Decimal("199.00")
    assert gateway.orders[0]["amount"] == Decimal("199.00")


def test_active_subscription_blocks_new_subscription_order(catalog, gateway, subscribed, order_subscription) -> None:
    calls_before = len(gateway.orders)
    with pytest.raises(ActiveSubscriptionExists):
        order_subscription(catalog.user_id, catalog.premium_plan_id)
    assert len(gateway.orders) == calls_before


def test_unknown_addon_is_rejected_before_gateway(catalog, gateway, order_subscription) -> None:
    with pytest.raises(NotFoundError, match="addons not found"):
        order_subscription(catalog.user_id, catalog.basic_plan_id, addon_ids=["missing-addon"])
    assert gateway.orders == []


def test_inactive_plan_and_unknown_user_are_rejected(session_factory, catalog, gateway, order_subscription) -> None:
    with session_scope(session_factory) as session:
        BillingRepository(session).get_plan(catalog.premium_plan_id).active = False

    with pytest.raises(NotFoundError, match="plan"):
        order_subscription(catalog.user_id, catalog.premium_plan_id)
    with pytest.raises(NotFoundError, match="user"):
        order_subscription("ghost-user", catalog.basic_plan_id)
    assert gateway.orders == []


def test_unsupported_billing_cycle(catalog, order_subscription) -> None:
    with pytest.raises(ValidationError):
        order_subscription(catalog.user_id, catalog.basic_plan_id, billing_cycle="weekly")


def test_gateway_failure_records_no_payment(session_factory, catalog, gateway, order_subscription) -> None:
    gateway.fail_with = GatewayError("payment gateway returned 500: server error")
    with pytest.raises(GatewayError):
        order_subscription(catalog.user_id, catalog.basic_plan_id)

    with session_scope(session_factory) as session:
        assert session.scalar(select(func.count()).select_from(Payment).where(Payment.user_id == catalog.user_id)) == 0


def test_addon_order_requires_active_subscription(catalog, gateway, order_addons) -> None:
    with pytest.raises(NotFoundError, match="subscription"):
        order_addons(catalog.user_id, [catalog.seo_addon_id])
    with pytest.raises(ValidationError):
        order_addons(catalog.user_id, [])
    assert gateway.orders == []


def test_addon_order_charges_only_new_addons(session_factory, catalog, subscribed, order_addons) -> None:
    placed = order_addons(catalog.user_id, [catalog.photo_addon_id, catalog.seo_addon_id])

    assert placed.payment_type == PaymentType.ADDON_PURCHASE
    assert placed.amount == Decimal("1499.00")
    assert placed.addon_ids == (catalog.seo_addon_id,)
    with session_scope(session_factory) as session:
        payment = BillingRepository(session).get_payment(placed.payment_id)
        assert payment.metadata_json["skipped_addon_ids"] == [catalog.photo_addon_id]
        assert payment.metadata_json["subscription_id"] == subscribed["subscription_id"]


def test_addon_order_with_only_owned_addons(catalog, gateway, subscribed, order_addons) -> None:
    calls_before = len(gateway.orders)
    with pytest.raises(NoNewAddons, match="All selected addons are already active"):
        order_addons(catalog.user_id, [catalog.photo_addon_id])
    assert len(gateway.orders) == calls_before
