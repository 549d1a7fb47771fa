"""Money arithmetic for orders.

Amounts are `Decimal` values in the major currency unit (rupees). Minor units
(paise) exist only at the gateway boundary via `to_minor_units` and
`from_minor_units`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from config import CLIENT_TOTAL_TOLERANCE, YEARLY_BILLED_MONTHS

from .errors import ValidationError
from .models import AddonService, BillingPeriod, Plan

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100


def to_money(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("amount must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("amount must be a number") from exc
    if not amount.is_finite():
        raise ValidationError("amount must be a number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Decimal:
    return to_money(Decimal(int(value)) / MINOR_UNITS_PER_MAJOR)


def normalize_billing_cycle(value: Optional[str]) -> BillingPeriod:
    raw = str(value or BillingPeriod.MONTHLY.value).strip().lower()
    try:
        return BillingPeriod(raw)
    except ValueError as exc:
        raise ValidationError(f"unsupported billing cycle: {raw}") from exc


def plan_charge(plan: Plan, billing_cycle: BillingPeriod) -> Decimal:
    price = to_money(plan.price)
    if billing_cycle == BillingPeriod.YEARLY and plan.billing_period == BillingPeriod.MONTHLY:
        return to_money(price * YEARLY_BILLED_MONTHS)
    return price


def addons_charge(addons: Iterable[AddonService]) -> Decimal:
    total = Decimal("0")
    for addon in addons:
        total += to_money(addon.price)
    return to_money(total)


@dataclass(frozen=True)
class OrderTotal:
    amount: Decimal
    plan_amount: Decimal
    addons_amount: Decimal
    client_total: Optional[Decimal]
    client_total_mismatch: bool


def compute_order_total(
    *,
    plan: Optional[Plan],
    addons: Iterable[AddonService],
    billing_cycle: BillingPeriod,
    client_total: Any = None,
    tolerance: Decimal = CLIENT_TOTAL_TOLERANCE,
) -> OrderTotal:
    """
    Compute the server-side total.

    The client total is only compared against the computed one; the computed
    amount is always what gets charged.
    """

    plan_amount = plan_charge(plan, billing_cycle) if plan is not None else Decimal("0.00")
    addons_amount = addons_charge(addons)
    amount = to_money(plan_amount + addons_amount)
    if amount <= 0:
        raise ValidationError("order amount must be positive")

    supplied = to_money(client_total) if client_total is not None else None
    mismatch = supplied is not None and abs(supplied - amount) > tolerance
    return OrderTotal(
        amount=amount,
        plan_amount=plan_amount,
        addons_amount=addons_amount,
        client_total=supplied,
        client_total_mismatch=mismatch,
    )
