from __future__ import annotations

from typing import Any, Optional

from observability import get_logger, log_event

from .models import Payment, PaymentType, Subscription, User

LOGGER = get_logger("marketplace.billing.receipts")


def dispatch_payment_receipt(
    user: Optional[User],
    payment: Payment,
    subscription: Optional[Subscription],
) -> bool:
    """Emit the receipt event for the mail pipeline. Never raises."""

    try:
        fields: dict[str, Any] = {
            "user_id": payment.user_id,
            "email": user.email if user is not None else None,
            "payment_id": payment.id,
            "gateway_order_id": payment.gateway_order_id,
            "gateway_payment_id": payment.gateway_payment_id,
            "receipt": payment.receipt,
            "payment_type": PaymentType(payment.payment_type).value,
            "amount": payment.amount,
            "currency": payment.currency,
            "paid_at": payment.paid_at,
        }
        if subscription is not None:
            fields["subscription_id"] = subscription.id
            fields["plan_name"] = (subscription.plan_snapshot or {}).get("name")
            fields["ends_at"] = subscription.ends_at
        log_event(LOGGER, 20, "billing.receipt.ready", **fields)
        return True
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, 40, "billing.receipt.failed", payment_id=getattr(payment, "id", None), error=str(exc))
        return False
