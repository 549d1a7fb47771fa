from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ContextManager, Optional

from sqlalchemy.orm import Session

from observability import get_logger, log_event

from .db import session_scope
from .errors import ConflictError, NotFoundError, ValidationError
from .gateway import BasePaymentGateway
from .models import PaymentStatus, utc_now
from .pricing import to_money
from .repository import BillingRepository

LOGGER = get_logger("marketplace.billing.refunds")

DEFAULT_REFUND_REASON = "Subscription cancellation"


@dataclass(frozen=True)
class RefundOutcome:
    refund_id: str
    gateway_refund_id: str
    payment_id: str
    gateway_payment_id: str
    amount: Decimal
    currency: str
    status: str
    remaining: Decimal


def refund_payment(
    gateway: BasePaymentGateway,
    *,
    gateway_payment_id: str,
    amount: Any = None,
    reason: Optional[str] = None,
    actor: str,
    scope: Callable[[], ContextManager[Session]] = session_scope,
    now: Optional[datetime] = None,
) -> RefundOutcome:
    """
    Refund a paid payment, fully or partially.

    The subscription is left untouched; revoking access is a separate admin
    decision.
    """

    current = now or utc_now()
    with scope() as session:
        repo = BillingRepository(session)
        payment = repo.get_payment_by_gateway_payment_id(gateway_payment_id)
        if payment is None:
            raise NotFoundError("payment not found")
        if payment.status != PaymentStatus.PAID:
            raise ConflictError(f"only paid payments can be refunded (status={PaymentStatus(payment.status).value})")
        refundable = to_money(payment.amount - repo.get_refunded_total(payment.id))
        requested = to_money(amount) if amount is not None else refundable
        if requested <= 0:
            raise ValidationError("refund amount must be positive")
        if requested > refundable:
            raise ValidationError(f"refund amount exceeds refundable balance {refundable}")
        payment_id = payment.id
        currency = payment.currency

    refund_reason = reason or DEFAULT_REFUND_REASON
    gateway_refund = gateway.refund(
        gateway_payment_id,
        amount=requested,
        notes={"reason": refund_reason, "refunded_by": actor},
    )

    with scope() as session:
        row = BillingRepository(session).record_refund(
            payment_id=payment_id,
            gateway_refund_id=gateway_refund.id,
            amount=gateway_refund.amount or requested,
            currency=gateway_refund.currency or currency,
            status=gateway_refund.status,
            reason=refund_reason,
            refunded_by=actor,
            now=current,
        )
        outcome = RefundOutcome(
            refund_id=row.id,
            gateway_refund_id=row.gateway_refund_id,
            payment_id=payment_id,
            gateway_payment_id=gateway_payment_id,
            amount=to_money(row.amount),
            currency=row.currency,
            status=row.status,
            remaining=to_money(refundable - to_money(row.amount)),
        )

    log_event(
        LOGGER,
        20,
        "billing.refund.recorded",
        payment_id=payment_id,
        gateway_refund_id=outcome.gateway_refund_id,
        amount=outcome.amount,
        actor=actor,
    )
    return outcome


def fetch_gateway_payment(gateway: BasePaymentGateway, payment_id: str) -> dict[str, Any]:
    """Gateway-side view of a payment, used to reconcile timed-out intents by hand."""

    payment = gateway.fetch_payment(payment_id)
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "created_at": payment.created_at,
    }
