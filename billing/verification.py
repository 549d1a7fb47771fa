"""Payment verification and gateway webhook handling.

Both entry points share one finalization core: a pending payment is moved to
`paid` by compare-and-swap and the entitlement is granted in the same
transaction. A payment that already left `pending` is never rewritten.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from observability import get_logger, log_event

from .addons import merge_addons
from .errors import (
    AlreadyFinalized,
    BillingError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    SignatureMismatch,
    ValidationError,
)
from .models import Payment, PaymentStatus, PaymentType, Subscription, utc_now
from .pricing import normalize_billing_cycle
from .repository import BillingRepository
from .subscriptions import activate_subscription

LOGGER = get_logger("marketplace.billing.verification")

WEBHOOK_CAPTURE_EVENTS = {"payment.captured", "order.paid"}
WEBHOOK_FAILURE_EVENTS = {"payment.failed"}


@dataclass
class VerificationResult:
    payment: Payment
    subscription: Optional[Subscription] = None
    granted_addon_ids: list[str] = field(default_factory=list)
    already_processed: bool = False
    no_new_addons: bool = False


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(*, order_id: str, payment_id: str, signature: Optional[str], secret: str) -> bool:
    if not secret:
        raise ConfigurationError("payment gateway is not configured")
    expected = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode("utf-8"), str(signature or "").strip().encode("utf-8"))


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret:
        raise ConfigurationError("webhook secret is not configured")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), str(signature or "").strip().encode("utf-8"))


def _existing_outcome(repo: BillingRepository, payment: Payment) -> VerificationResult:
    event = repo.get_payment_event(payment.id)
    return VerificationResult(
        payment=payment,
        subscription=repo.get_subscription(payment.subscription_id),
        granted_addon_ids=list(event.addon_ids or []) if event is not None else [],
        already_processed=True,
        no_new_addons=payment.payment_type == PaymentType.ADDON_PURCHASE and event is None,
    )


def _settled_outcome(repo: BillingRepository, payment: Payment) -> Optional[VerificationResult]:
    status = PaymentStatus(payment.status)
    if status == PaymentStatus.PENDING:
        return None
    if status == PaymentStatus.PAID:
        return _existing_outcome(repo, payment)
    raise AlreadyFinalized(f"payment is already {status.value}", status=status.value)


def _normalize_ids(values: Iterable[Any]) -> set[str]:
    return {str(item).strip() for item in values if str(item).strip()}


def _check_context(payment: Payment, context: Optional[dict[str, Any]]) -> None:
    """Client-echoed order context must agree with what was stored at order time."""

    if not context:
        return
    plan_id = context.get("plan_id")
    if plan_id and str(plan_id).strip() != (payment.plan_id or ""):
        raise ValidationError("plan does not match the order")
    billing_cycle = context.get("billing_cycle")
    if billing_cycle and normalize_billing_cycle(billing_cycle).value != payment.billing_cycle:
        raise ValidationError("billing cycle does not match the order")
    addon_ids = context.get("addon_ids")
    if addon_ids is not None:
        skipped = _normalize_ids((payment.metadata_json or {}).get("skipped_addon_ids") or [])
        if _normalize_ids(addon_ids) - skipped != set(payment.addon_ids):
            raise ValidationError("addons do not match the order")


def _no_new_addons_detail(owned: list[str], missing: list[str]) -> str:
    parts = []
    if owned:
        parts.append(f"already owned: {', '.join(owned)}")
    if missing:
        parts.append(f"not in catalog: {', '.join(missing)}")
    return ("payment captured but nothing was granted; " + "; ".join(parts))[:255]


def _finalize_payment(
    repo: BillingRepository,
    payment: Payment,
    *,
    gateway_payment_id: str,
    signature: Optional[str],
    now: datetime,
) -> VerificationResult:
    settled = _settled_outcome(repo, payment)
    if settled is not None:
        return settled

    if not repo.mark_payment_paid(payment.id, gateway_payment_id=gateway_payment_id, signature=signature, now=now):
        # Lost the race to another verification or to the sweeper.
        settled = _settled_outcome(repo, repo.reload_payment(payment.id))
        if settled is None:
            raise ConflictError("payment state changed concurrently")
        return settled

    if payment.payment_type == PaymentType.SUBSCRIPTION_PURCHASE:
        activation = activate_subscription(repo, payment=payment, now=now)
        return VerificationResult(
            payment=payment,
            subscription=activation.subscription,
            granted_addon_ids=[row.addon_id for row in activation.granted_addons],
        )

    subscription = repo.get_active_subscription(payment.user_id, now)
    if subscription is None:
        raise NotFoundError("no active subscription found")
    merge = merge_addons(repo, subscription=subscription, addon_ids=payment.addon_ids, payment=payment, now=now)
    if merge.no_new_addons:
        repo.record_audit_log(
            source="billing",
            event_type="addon_merge",
            raw_payload=json.dumps(
                {
                    "payment_id": payment.id,
                    "addon_ids": payment.addon_ids,
                    "already_owned": merge.skipped_addon_ids,
                    "missing": merge.missing_addon_ids,
                }
            ),
            outcome="no_new_addons",
            signature_valid=True,
            gateway_order_id=payment.gateway_order_id,
            detail=_no_new_addons_detail(merge.skipped_addon_ids, merge.missing_addon_ids),
            occurred_at=now,
        )
    return VerificationResult(
        payment=payment,
        subscription=merge.subscription,
        granted_addon_ids=[row.addon_id for row in merge.granted_addons],
        no_new_addons=merge.no_new_addons,
    )


def verify_payment(
    repo: BillingRepository,
    *,
    secret: str,
    user_id: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: Optional[str],
    expected_type: PaymentType,
    context: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> VerificationResult:
    current = now or utc_now()
    order_key = str(gateway_order_id or "").strip()
    payment_key = str(gateway_payment_id or "").strip()
    if not order_key or not payment_key:
        raise ValidationError("gateway order id and payment id are required")
    if not verify_payment_signature(order_id=order_key, payment_id=payment_key, signature=signature, secret=secret):
        log_event(
            LOGGER,
            30,
            "billing.verify.signature_mismatch",
            user_id=user_id,
            gateway_order_id=order_key,
        )
        raise SignatureMismatch("payment signature verification failed")

    payment = repo.get_payment_by_order_id(order_key)
    if payment is None or payment.user_id != user_id:
        raise NotFoundError("payment not found")
    if payment.payment_type != expected_type:
        raise ValidationError("payment type does not match this endpoint")
    _check_context(payment, context)

    result = _finalize_payment(repo, payment, gateway_payment_id=payment_key, signature=signature, now=current)
    log_event(
        LOGGER,
        20,
        "billing.verify.processed",
        user_id=user_id,
        payment_id=payment.id,
        gateway_order_id=order_key,
        payment_type=expected_type.value,
        already_processed=result.already_processed,
        no_new_addons=result.no_new_addons,
        subscription_id=result.subscription.id if result.subscription is not None else None,
    )
    return result


def process_gateway_webhook(
    repo: BillingRepository,
    *,
    body: bytes,
    signature: Optional[str],
    secret: str,
    event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Apply one Razorpay webhook delivery.

    Every delivery is written to the audit log, including rejected ones, so the
    caller must commit even when the returned status is ``rejected``.
    """

    current = now or utc_now()
    raw_payload = body.decode("utf-8", errors="replace")

    def _audit(event_type: str, outcome: str, *, valid: bool, order_id: Optional[str] = None, detail: Optional[str] = None) -> None:
        repo.record_audit_log(
            event_type=event_type,
            raw_payload=raw_payload,
            outcome=outcome,
            signature_valid=valid,
            gateway_event_id=event_id,
            gateway_order_id=order_id,
            detail=detail,
            occurred_at=current,
        )

    if not verify_webhook_signature(body, signature, secret):
        _audit("webhook", "rejected", valid=False, detail="signature mismatch")
        log_event(LOGGER, 30, "billing.webhook.signature_mismatch", event_id=event_id)
        return {"status": "rejected", "reason": "signature mismatch"}

    try:
        event = json.loads(raw_payload)
    except ValueError:
        event = None
    if not isinstance(event, dict):
        _audit("webhook", "invalid", valid=True, detail="payload is not a JSON object")
        return {"status": "ignored", "reason": "invalid payload"}

    event_type = str(event.get("event") or "").strip().lower() or "unknown"
    payload = event.get("payload") or {}
    payment_entity = (payload.get("payment") or {}).get("entity") or {}
    order_entity = (payload.get("order") or {}).get("entity") or {}
    order_id = str(payment_entity.get("order_id") or order_entity.get("id") or "").strip()
    gateway_payment_id = str(payment_entity.get("id") or "").strip()
    log_event(LOGGER, 20, "billing.webhook.received", event_type=event_type, event_id=event_id, gateway_order_id=order_id)

    if event_type not in WEBHOOK_CAPTURE_EVENTS | WEBHOOK_FAILURE_EVENTS:
        _audit(event_type, "ignored", valid=True, order_id=order_id or None)
        return {"status": "ignored", "reason": f"unsupported event={event_type}"}

    payment = repo.get_payment_by_order_id(order_id)
    if payment is None:
        _audit(event_type, "unknown_order", valid=True, order_id=order_id or None)
        return {"status": "ignored", "reason": "unknown order"}

    if event_type in WEBHOOK_FAILURE_EVENTS:
        # One declined attempt does not close the order; the customer can retry
        # on the same gateway order until the sweeper expires it.
        reason = str(payment_entity.get("error_description") or "payment failed")
        noted = repo.record_failed_attempt(
            payment.id,
            reason=reason,
            gateway_payment_id=gateway_payment_id or None,
            now=current,
        )
        outcome = "attempt_failed" if noted else "noop"
        _audit(event_type, outcome, valid=True, order_id=order_id, detail=reason[:255])
        return {"status": outcome, "payment_id": payment.id, "gateway_order_id": order_id}

    if not gateway_payment_id:
        _audit(event_type, "invalid", valid=True, order_id=order_id, detail="payment entity missing")
        return {"status": "ignored", "reason": "payment entity missing"}
    try:
        with repo.session.begin_nested():
            result = _finalize_payment(repo, payment, gateway_payment_id=gateway_payment_id, signature=None, now=current)
    except AlreadyFinalized as exc:
        # Captured after the order was swept; needs a manual refund.
        _audit(event_type, "already_finalized", valid=True, order_id=order_id, detail=exc.message)
        log_event(LOGGER, 40, "billing.webhook.captured_after_finalize", gateway_order_id=order_id, status=exc.status)
        return {"status": "already_finalized", "payment_id": payment.id, "gateway_order_id": order_id}
    except BillingError as exc:
        # The grant rolled back to the savepoint and the payment stays pending;
        # the delivery itself is still recorded for reconciliation.
        outcome = "unmatched_subscription" if isinstance(exc, NotFoundError) else "unprocessed"
        _audit(event_type, outcome, valid=True, order_id=order_id, detail=f"{exc.code}: {exc.message}"[:255])
        log_event(
            LOGGER,
            40,
            "billing.webhook.capture_unprocessed",
            gateway_order_id=order_id,
            payment_id=payment.id,
            error_code=exc.code,
        )
        return {"status": outcome, "payment_id": payment.id, "gateway_order_id": order_id, "reason": exc.message}

    if result.already_processed:
        outcome = "already_processed"
    elif result.no_new_addons:
        outcome = "no_new_addons"
    else:
        outcome = "processed"
    _audit(event_type, outcome, valid=True, order_id=order_id)
    return {
        "status": outcome,
        "payment_id": payment.id,
        "gateway_order_id": order_id,
        "subscription_id": result.subscription.id if result.subscription is not None else None,
    }


def get_payment_status(
    repo: BillingRepository,
    *,
    user_id: str,
    gateway_order_id: str,
    is_admin: bool = False,
) -> dict[str, Any]:
    payment = repo.get_payment_by_order_id(gateway_order_id)
    if payment is None or (not is_admin and payment.user_id != user_id):
        raise NotFoundError("payment not found")
    return {
        "payment_id": payment.id,
        "gateway_order_id": payment.gateway_order_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "status": PaymentStatus(payment.status).value,
        "payment_type": PaymentType(payment.payment_type).value,
        "amount": payment.amount,
        "currency": payment.currency,
        "plan_id": payment.plan_id,
        "addon_ids": payment.addon_ids,
        "subscription_id": payment.subscription_id,
        "status_reason": payment.status_reason,
        "expires_at": payment.expires_at,
        "paid_at": payment.paid_at,
        "created_at": payment.created_at,
    }
