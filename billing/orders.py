"""Order creation: quote in one session, call the gateway, record in another.

The gateway call never runs inside an open transaction, and a Payment row is
written only after the gateway accepted the order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, ContextManager, Optional

from sqlalchemy.orm import Session

from config import DEFAULT_CURRENCY, PAYMENT_ORDER_TTL_SECONDS
from observability import get_logger, log_event

from .db import session_scope
from .errors import ActiveSubscriptionExists, NoNewAddons, NotFoundError, ValidationError
from .gateway import BasePaymentGateway
from .models import AddonService, BillingPeriod, PaymentType, utc_now
from .pricing import OrderTotal, compute_order_total, normalize_billing_cycle, to_money
from .repository import BillingRepository
from .subscriptions import build_plan_snapshot

LOGGER = get_logger("marketplace.billing.orders")

RECEIPT_MAX_LENGTH = 40

ScopeFactory = Callable[[], ContextManager[Session]]
QuoteBuilder = Callable[[BillingRepository, datetime], "OrderQuote"]


@dataclass(frozen=True)
class OrderQuote:
    user_id: str
    payment_type: PaymentType
    amount: Decimal
    currency: str
    receipt: str
    billing_cycle: BillingPeriod
    plan_id: Optional[str] = None
    addon_ids: tuple[str, ...] = ()
    notes: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlacedOrder:
    payment_id: str
    gateway_order_id: str
    payment_type: PaymentType
    amount: Decimal
    currency: str
    receipt: str
    expires_at: datetime
    key_id: str
    plan_id: Optional[str] = None
    addon_ids: tuple[str, ...] = ()


def _epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def build_receipt(prefix: str, key: str, now: datetime) -> str:
    return f"{prefix}_{key}_{_epoch_ms(now)}"[:RECEIPT_MAX_LENGTH]


def _normalize_ids(addon_ids: Optional[Iterable[str]]) -> list[str]:
    return list(dict.fromkeys(str(item).strip() for item in (addon_ids or []) if str(item).strip()))


def _resolve_addons(repo: BillingRepository, addon_ids: list[str]) -> list[AddonService]:
    addons = repo.get_addons(addon_ids, active_only=True)
    if len(addons) != len(addon_ids):
        raise NotFoundError("One or more addons not found")
    return addons


def _require_user(repo: BillingRepository, user_id: str) -> str:
    user = repo.get_user(user_id)
    if user is None or not user.active:
        raise NotFoundError("user not found")
    return user.id


def _log_client_total(total: OrderTotal, *, user_id: str, payment_type: PaymentType) -> None:
    if not total.client_total_mismatch:
        return
    log_event(
        LOGGER,
        30,
        "billing.order.client_total_mismatch",
        user_id=user_id,
        payment_type=payment_type.value,
        client_total=total.client_total,
        server_total=total.amount,
    )


def _addon_prices(addons: Iterable[AddonService]) -> dict[str, str]:
    return {addon.id: str(to_money(addon.price)) for addon in addons}


def _money_metadata(total: OrderTotal) -> dict[str, Any]:
    # JSON columns cannot hold Decimal.
    return {
        "plan_amount": str(total.plan_amount),
        "addons_amount": str(total.addons_amount),
        "client_total": str(total.client_total) if total.client_total is not None else None,
    }


def quote_subscription_order(
    repo: BillingRepository,
    *,
    user_id: str,
    plan_id: str,
    addon_ids: Optional[Iterable[str]] = None,
    billing_cycle: Optional[str] = None,
    client_total: Any = None,
    now: Optional[datetime] = None,
) -> OrderQuote:
    current = now or utc_now()
    user_key = _require_user(repo, user_id)
    plan = repo.get_plan(plan_id)
    if plan is None or not plan.active:
        raise NotFoundError("plan not found")
    if repo.get_active_subscription(user_key, current) is not None:
        raise ActiveSubscriptionExists("user already has an active subscription")
    cycle = normalize_billing_cycle(billing_cycle)
    addons = _resolve_addons(repo, _normalize_ids(addon_ids))

    total = compute_order_total(plan=plan, addons=addons, billing_cycle=cycle, client_total=client_total)
    _log_client_total(total, user_id=user_key, payment_type=PaymentType.SUBSCRIPTION_PURCHASE)

    charged_ids = tuple(addon.id for addon in addons)
    return OrderQuote(
        user_id=user_key,
        payment_type=PaymentType.SUBSCRIPTION_PURCHASE,
        amount=total.amount,
        currency=plan.currency or DEFAULT_CURRENCY,
        receipt=build_receipt("sub", plan.identifier, current),
        billing_cycle=cycle,
        plan_id=plan.id,
        addon_ids=charged_ids,
        notes={
            "user_id": user_key,
            "type": PaymentType.SUBSCRIPTION_PURCHASE.value,
            "plan_id": plan.id,
            "billing_cycle": cycle.value,
            "addon_ids": ",".join(charged_ids),
        },
        metadata={
            "plan_id": plan.id,
            "plan_identifier": plan.identifier,
            "billing_cycle": cycle.value,
            "addon_ids": list(charged_ids),
            "addon_prices": _addon_prices(addons),
            "plan_snapshot": build_plan_snapshot(plan, cycle),
            **_money_metadata(total),
        },
    )


def quote_addon_order(
    repo: BillingRepository,
    *,
    user_id: str,
    addon_ids: Optional[Iterable[str]],
    client_total: Any = None,
    now: Optional[datetime] = None,
) -> OrderQuote:
    current = now or utc_now()
    requested = _normalize_ids(addon_ids)
    if not requested:
        raise ValidationError("at least one addon is required")
    user_key = _require_user(repo, user_id)
    subscription = repo.get_active_subscription(user_key, current)
    if subscription is None:
        raise NotFoundError("no active subscription found")
    addons = _resolve_addons(repo, requested)

    owned = {row.addon_id for row in repo.list_subscription_addons(subscription.id)}
    new_addons = [addon for addon in addons if addon.id not in owned]
    if not new_addons:
        raise NoNewAddons("All selected addons are already active")

    total = compute_order_total(
        plan=None,
        addons=new_addons,
        billing_cycle=BillingPeriod.MONTHLY,
        client_total=client_total,
    )
    _log_client_total(total, user_id=user_key, payment_type=PaymentType.ADDON_PURCHASE)

    charged_ids = tuple(addon.id for addon in new_addons)
    return OrderQuote(
        user_id=user_key,
        payment_type=PaymentType.ADDON_PURCHASE,
        amount=total.amount,
        currency=subscription.currency or DEFAULT_CURRENCY,
        receipt=build_receipt("addon", user_key[-8:], current),
        billing_cycle=BillingPeriod.MONTHLY,
        addon_ids=charged_ids,
        notes={
            "user_id": user_key,
            "type": PaymentType.ADDON_PURCHASE.value,
            "addon_ids": ",".join(charged_ids),
            "subscription_id": subscription.id,
        },
        metadata={
            "addon_ids": list(charged_ids),
            "subscription_id": subscription.id,
            "addon_prices": _addon_prices(new_addons),
            "skipped_addon_ids": [addon.id for addon in addons if addon.id in owned],
            **_money_metadata(total),
        },
    )


def place_order(
    gateway: BasePaymentGateway,
    quote_builder: QuoteBuilder,
    *,
    scope: ScopeFactory = session_scope,
    now: Optional[datetime] = None,
) -> PlacedOrder:
    current = now or utc_now()
    with scope() as session:
        quote = quote_builder(BillingRepository(session), current)

    order = gateway.create_order(
        amount=quote.amount,
        currency=quote.currency,
        receipt=quote.receipt,
        notes=quote.notes,
    )
    if order.amount != quote.amount:
        log_event(
            LOGGER,
            30,
            "billing.order.gateway_amount_mismatch",
            gateway_order_id=order.id,
            expected=quote.amount,
            gateway_amount=order.amount,
        )

    expires_at = current + timedelta(seconds=PAYMENT_ORDER_TTL_SECONDS)
    with scope() as session:
        payment = BillingRepository(session).create_payment(
            user_id=quote.user_id,
            gateway_order_id=order.id,
            amount=quote.amount,
            currency=quote.currency,
            payment_type=quote.payment_type,
            expires_at=expires_at,
            receipt=quote.receipt,
            metadata=quote.metadata,
            now=current,
        )
        payment_id = payment.id

    log_event(
        LOGGER,
        20,
        "billing.order.created",
        user_id=quote.user_id,
        payment_id=payment_id,
        gateway_order_id=order.id,
        payment_type=quote.payment_type.value,
        amount=quote.amount,
        currency=quote.currency,
    )
    return PlacedOrder(
        payment_id=payment_id,
        gateway_order_id=order.id,
        payment_type=quote.payment_type,
        amount=quote.amount,
        currency=quote.currency,
        receipt=quote.receipt,
        expires_at=expires_at,
        key_id=gateway.key_id,
        plan_id=quote.plan_id,
        addon_ids=quote.addon_ids,
    )
