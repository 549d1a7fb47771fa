from __future__ import annotations

import itertools
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import pytest

from billing import (
    BasePaymentGateway,
    BillingRepository,
    GatewayError,
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    PaymentType,
    build_session_factory,
    init_billing_db,
    place_order,
    quote_addon_order,
    quote_subscription_order,
    session_scope,
    verify_payment,
)
from billing.verification import compute_payment_signature

TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeGateway(BasePaymentGateway):
    """In-memory Razorpay stand-in that records every call."""

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self.orders: list[Dict[str, Any]] = []
        self.refunds: list[Dict[str, Any]] = []
        self.payments: Dict[str, GatewayPayment] = {}
        self.fail_with: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "fake"

    @property
    def key_id(self) -> str:
        return "rzp_test_fake"

    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        if self.fail_with is not None:
            raise self.fail_with
        order_id = f"order_{next(self._sequence):06d}"
        self.orders.append({"id": order_id, "amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return GatewayOrder(id=order_id, amount=amount, currency=currency, receipt=receipt)

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayError("payment gateway returned 404: The id provided does not exist")
        return payment

    def refund(
        self,
        payment_id: str,
        *,
        amount: Optional[Decimal] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayRefund:
        if self.fail_with is not None:
            raise self.fail_with
        refund_id = f"rfnd_{next(self._sequence):06d}"
        self.refunds.append({"id": refund_id, "payment_id": payment_id, "amount": amount, "notes": notes})
        return GatewayRefund(
            id=refund_id,
            payment_id=payment_id,
            amount=amount or Decimal("0.00"),
            currency="INR",
            status="processed",
        )


@dataclass
class Catalog:
    user_id: str
    other_user_id: str
    admin_id: str
    basic_plan_id: str
    premium_plan_id: str
    photo_addon_id: str
    seo_addon_id: str
    crm_addon_id: str
    addon_prices: Dict[str, Decimal] = field(default_factory=dict)


def sign(order_id: str, payment_id: str, secret: str = TEST_KEY_SECRET) -> str:
    return compute_payment_signature(order_id, payment_id, secret)


@pytest.fixture()
def session_factory(tmp_path: Path):
    engine, factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'billing.db'}")
    init_billing_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def scope(session_factory):
    @contextmanager
    def _scope() -> Iterator[Any]:
        with session_scope(session_factory) as session:
            yield session

    return _scope


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def catalog(session_factory) -> Catalog:
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        user = repo.upsert_user(email="owner@example.com", user_id="user-1", name="Owner")
        other = repo.upsert_user(email="other@example.com", user_id="user-2", name="Other")
        admin = repo.upsert_user(email="admin@example.com", user_id="admin-1", role="admin")
        basic = repo.create_plan(
            identifier="basic",
            name="BASIC PLAN",
            price="199",
            limits={"properties": 10, "leads": 5},
            now=NOW,
        )
        premium = repo.create_plan(
            identifier="premium",
            name="PREMIUM PLAN",
            price="1999",
            limits={"properties": 0, "leads": 20},
            now=NOW,
        )
        photo = repo.create_addon(
            name="Professional Photography",
            price="2999",
            category="photography",
            billing_type="per_property",
            sort_order=1,
        )
        seo = repo.create_addon(name="SEO Optimization", price="1499", category="marketing", sort_order=2)
        crm = repo.create_addon(name="CRM Integration", price="999", category="crm", sort_order=3)
        return Catalog(
            user_id=user.id,
            other_user_id=other.id,
            admin_id=admin.id,
            basic_plan_id=basic.id,
            premium_plan_id=premium.id,
            photo_addon_id=photo.id,
            seo_addon_id=seo.id,
            crm_addon_id=crm.id,
            addon_prices={
                photo.id: Decimal("2999.00"),
                seo.id: Decimal("1499.00"),
                crm.id: Decimal("999.00"),
            },
        )


@pytest.fixture()
def order_subscription(scope, gateway):
    def _order(user_id: str, plan_id: str, *, addon_ids=(), billing_cycle: str = "monthly", now: datetime = NOW):
        def _quote(repo, current):
            return quote_subscription_order(
                repo,
                user_id=user_id,
                plan_id=plan_id,
                addon_ids=list(addon_ids),
                billing_cycle=billing_cycle,
                now=current,
            )

        return place_order(gateway, _quote, scope=scope, now=now)

    return _order


@pytest.fixture()
def order_addons(scope, gateway):
    def _order(user_id: str, addon_ids, *, now: datetime = NOW):
        def _quote(repo, current):
            return quote_addon_order(repo, user_id=user_id, addon_ids=list(addon_ids), now=current)

        return place_order(gateway, _quote, scope=scope, now=now)

    return _order


@pytest.fixture()
def verify(scope):
    """Verify a placed order with a valid signature; returns plain values, not ORM rows."""

    def _verify(
        user_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        *,
        expected_type: PaymentType = PaymentType.SUBSCRIPTION_PURCHASE,
        now: datetime = NOW,
    ) -> Dict[str, Any]:
        with scope() as session:
            result = verify_payment(
                BillingRepository(session),
                secret=TEST_KEY_SECRET,
                user_id=user_id,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                signature=sign(gateway_order_id, gateway_payment_id),
                expected_type=expected_type,
                now=now,
            )
            return {
                "payment_id": result.payment.id,
                "status": result.payment.status.value,
                "subscription_id": result.subscription.id if result.subscription is not None else None,
                "granted_addon_ids": list(result.granted_addon_ids),
                "already_processed": result.already_processed,
                "no_new_addons": result.no_new_addons,
            }

    return _verify


@pytest.fixture()
def subscribed(catalog, order_subscription, verify) -> Dict[str, Any]:
    """user-1 holds an active basic subscription with the photography add-on."""

    order = order_subscription(catalog.user_id, catalog.basic_plan_id, addon_ids=[catalog.photo_addon_id])
    outcome = verify(catalog.user_id, order.gateway_order_id, "pay_seed0001")
    return {"order": order, **outcome}


@dataclass
class ApiHarness:
    client: Any
    gateway: FakeGateway
    catalog: Catalog
    scope: Any
    token_secret: str = "test-secret"

    def headers(self, user_id: str, role: str = "user") -> Dict[str, str]:
        from auth import AuthIdentity, issue_access_token

        token = issue_access_token(AuthIdentity(user_id=user_id, role=role), self.token_secret, 3600)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def api(monkeypatch, scope, gateway, catalog) -> Iterator[ApiHarness]:
    """TestClient wired to the temp database and the fake gateway, with auth on."""

    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(main, "AUTH_ENABLED", True)
    monkeypatch.setattr(main, "AUTH_TOKEN_SECRET", "test-secret")
    monkeypatch.setattr(main, "RAZORPAY_KEY_SECRET", TEST_KEY_SECRET)
    monkeypatch.setattr(main, "RAZORPAY_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(main, "DISABLE_PAYMENT_RATE_LIMIT", True)
    monkeypatch.setattr(main, "REDIS_DISABLED", True)
    monkeypatch.setattr(main, "session_scope", scope)
    monkeypatch.setattr(main, "init_billing_db", lambda: None)
    monkeypatch.setattr(main, "seed_default_catalog", lambda: None)
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    try:
        with TestClient(main.app, raise_server_exceptions=False) as client:
            yield ApiHarness(client=client, gateway=gateway, catalog=catalog, scope=scope)
    finally:
        main.app.dependency_overrides.pop(main.get_payment_gateway, None)
