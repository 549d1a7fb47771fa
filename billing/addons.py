from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from observability import get_logger, log_event

from .models import Payment, PaymentType, Subscription, SubscriptionAddon, utc_now
from .pricing import to_money
from .repository import BillingRepository

LOGGER = get_logger("marketplace.billing.addons")


@dataclass
class AddonMergeResult:
    subscription: Subscription
    granted_addons: list[SubscriptionAddon] = field(default_factory=list)
    skipped_addon_ids: list[str] = field(default_factory=list)
    missing_addon_ids: list[str] = field(default_factory=list)
    amount_delta: Decimal = Decimal("0.00")

    @property
    def no_new_addons(self) -> bool:
        return not self.granted_addons


def merge_addons(
    repo: BillingRepository,
    *,
    subscription: Subscription,
    addon_ids: Iterable[str],
    payment: Payment,
    now: Optional[datetime] = None,
) -> AddonMergeResult:
    """
    Set-union the paid add-ons into the subscription.

    Each insert is append-if-absent, so concurrent merges of overlapping sets
    grant every add-on once and only newly inserted ones are billed into the
    subscription amount, at the price the payment charged for them. Add-ons
    deactivated after the order was placed are still granted.
    """

    current = now or utc_now()
    result = AddonMergeResult(subscription=subscription)
    requested = list(dict.fromkeys(addon_ids))
    addons = repo.get_addons(requested, active_only=False)
    found = {addon.id for addon in addons}
    result.missing_addon_ids = [addon_id for addon_id in requested if addon_id not in found]
    charged_prices = payment.addon_prices
    for addon in addons:
        row = repo.add_subscription_addon(
            subscription.id,
            addon,
            payment_id=payment.id,
            price=charged_prices.get(addon.id),
            now=current,
        )
        if row is None:
            result.skipped_addon_ids.append(addon.id)
        else:
            result.granted_addons.append(row)

    if result.no_new_addons:
        log_event(
            LOGGER,
            30,
            "billing.addons.no_new_addons",
            subscription_id=subscription.id,
            payment_id=payment.id,
            skipped=result.skipped_addon_ids,
            missing=result.missing_addon_ids,
        )
        return result

    result.amount_delta = to_money(sum((to_money(row.price) for row in result.granted_addons), Decimal("0")))
    result.subscription = repo.increment_subscription_amount(subscription.id, result.amount_delta, now=current)
    repo.record_payment_event(
        subscription_id=subscription.id,
        payment=payment,
        event_type=PaymentType.ADDON_PURCHASE,
        amount=result.amount_delta,
        addon_ids=[row.addon_id for row in result.granted_addons],
        now=current,
    )
    repo.link_payment_subscription(payment.id, subscription.id, now=current)
    log_event(
        LOGGER,
        20,
        "billing.addons.merged",
        subscription_id=subscription.id,
        payment_id=payment.id,
        granted=[row.addon_id for row in result.granted_addons],
        skipped=result.skipped_addon_ids,
        missing=result.missing_addon_ids,
        amount_delta=result.amount_delta,
    )
    return result
