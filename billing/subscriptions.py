from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from observability import get_logger, log_event

from .errors import NotFoundError, ValidationError
from .models import (
    BillingPeriod,
    Payment,
    PaymentType,
    Plan,
    Subscription,
    SubscriptionAddon,
    SubscriptionStatus,
    utc_now,
)
from .pricing import normalize_billing_cycle, plan_charge, to_money
from .repository import BillingRepository

LOGGER = get_logger("marketplace.billing.subscriptions")

SUBSCRIPTION_PERIOD_DAYS = {
    BillingPeriod.MONTHLY: 30,
    BillingPeriod.YEARLY: 365,
}


@dataclass
class ActivationResult:
    subscription: Subscription
    granted_addons: list[SubscriptionAddon] = field(default_factory=list)
    superseded_ids: list[str] = field(default_factory=list)


def subscription_ends_at(starts_at: datetime, billing_cycle: BillingPeriod) -> datetime:
    return starts_at + timedelta(days=SUBSCRIPTION_PERIOD_DAYS[billing_cycle])


def build_plan_snapshot(plan: Plan, billing_cycle: BillingPeriod) -> dict[str, Any]:
    """Value copy of the plan as priced for an order; later catalog edits do not reach it."""

    return {
        "plan_id": plan.id,
        "identifier": plan.identifier,
        "name": plan.name,
        "description": plan.description,
        "price": str(to_money(plan.price)),
        "charged_price": str(plan_charge(plan, billing_cycle)),
        "currency": plan.currency,
        "billing_period": BillingPeriod(plan.billing_period).value,
        "billing_cycle": billing_cycle.value,
        "limits": dict(plan.limits or {}),
    }


def activate_subscription(
    repo: BillingRepository,
    *,
    payment: Payment,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """
    Grant a subscription for a payment that was just moved to `paid`.

    Runs inside the caller's transaction. Any error rolls the whole
    verification back, leaving the payment pending.
    """

    if payment.payment_type != PaymentType.SUBSCRIPTION_PURCHASE:
        raise ValidationError("payment is not a subscription purchase")
    current = now or utc_now()
    plan = repo.get_plan(payment.plan_id or "")
    if plan is None:
        raise NotFoundError("plan not found")
    cycle = normalize_billing_cycle(payment.billing_cycle)
    # Already charged, so inactive catalog rows are still granted.
    addons = repo.get_addons(payment.addon_ids, active_only=False)
    charged_prices = payment.addon_prices
    # Frozen at order time so a price change before verification is not billed.
    snapshot = payment.plan_snapshot or build_plan_snapshot(plan, cycle)

    def _build() -> Subscription:
        return Subscription(
            user_id=payment.user_id,
            plan_id=plan.id,
            payment_id=payment.id,
            plan_snapshot=dict(snapshot),
            status=SubscriptionStatus.ACTIVE,
            starts_at=current,
            ends_at=subscription_ends_at(current, cycle),
            amount=payment.amount,
            currency=payment.currency,
            created_at=current,
            updated_at=current,
        )

    subscription, superseded_ids = repo.supersede_active_subscription(
        user_id=payment.user_id,
        build=_build,
        now=current,
    )

    granted: list[SubscriptionAddon] = []
    for addon in addons:
        row = repo.add_subscription_addon(
            subscription.id,
            addon,
            payment_id=payment.id,
            price=charged_prices.get(addon.id),
            now=current,
        )
        if row is not None:
            granted.append(row)

    repo.record_payment_event(
        subscription_id=subscription.id,
        payment=payment,
        event_type=PaymentType.SUBSCRIPTION_PURCHASE,
        amount=payment.amount,
        addon_ids=[row.addon_id for row in granted],
        now=current,
    )
    repo.link_payment_subscription(payment.id, subscription.id, now=current)
    repo.increment_plan_subscriber_count(plan.id, now=current)

    log_event(
        LOGGER,
        20,
        "billing.subscription.activated",
        user_id=payment.user_id,
        subscription_id=subscription.id,
        plan_id=plan.id,
        billing_cycle=cycle.value,
        addon_count=len(granted),
        superseded=superseded_ids,
        ends_at=subscription.ends_at,
    )
    return ActivationResult(subscription=subscription, granted_addons=granted, superseded_ids=superseded_ids)


def get_current_subscription(
    repo: BillingRepository,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    return repo.get_active_subscription(user_id, now or utc_now())


def describe_subscription(repo: BillingRepository, subscription: Subscription) -> dict[str, Any]:
    addons = repo.list_subscription_addons(subscription.id)
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "plan": dict(subscription.plan_snapshot or {}),
        "status": SubscriptionStatus(subscription.status).value,
        "starts_at": subscription.starts_at,
        "ends_at": subscription.ends_at,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "addons": [
            {
                "addon_id": row.addon_id,
                "name": row.name,
                "price": row.price,
                "currency": row.currency,
                "category": row.category,
                "billing_type": row.billing_type,
                "granted_at": row.granted_at,
            }
            for row in addons
        ],
    }
