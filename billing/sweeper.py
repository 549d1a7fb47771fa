from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, ContextManager, Optional

from sqlalchemy.orm import Session

from config import PAYMENT_SWEEP_BATCH_SIZE
from observability import get_logger, log_event

from .db import session_scope
from .models import utc_now
from .repository import FAILED_ATTEMPT_PREFIX, BillingRepository

LOGGER = get_logger("marketplace.billing.sweeper")

PAYMENT_TIMEOUT_REASON = "payment timeout"


def expire_stale_payments(
    repo: BillingRepository,
    *,
    now: Optional[datetime] = None,
    batch_size: int = PAYMENT_SWEEP_BATCH_SIZE,
) -> int:
    """
    Close pending payments whose deadline has passed.

    A payment whose last gateway attempt was declined ends as `failed`, any
    other as `cancelled`. Uses the same compare-and-swap as verification; a
    payment that was paid between the select and the update is left alone.
    Returns the number of payments closed.
    """

    current = now or utc_now()
    closed = 0
    for payment in repo.list_expired_pending_payments(now=current, limit=batch_size):
        last_attempt = payment.status_reason or ""
        if last_attempt.startswith(FAILED_ATTEMPT_PREFIX):
            status = "failed"
            changed = repo.mark_payment_failed(payment.id, reason=last_attempt, now=current)
        else:
            status = "cancelled"
            changed = repo.mark_payment_cancelled(payment.id, reason=PAYMENT_TIMEOUT_REASON, now=current)
        if not changed:
            continue
        closed += 1
        if payment.subscription_id:
            repo.cancel_subscription(payment.subscription_id, reason=PAYMENT_TIMEOUT_REASON, now=current)
        log_event(
            LOGGER,
            20,
            "billing.sweep.payment_closed",
            payment_id=payment.id,
            status=status,
            gateway_order_id=payment.gateway_order_id,
            user_id=payment.user_id,
        )
    return closed


def run_payment_maintenance(
    scope: Callable[[], ContextManager[Session]] = session_scope,
    *,
    now: Optional[datetime] = None,
    batch_size: int = PAYMENT_SWEEP_BATCH_SIZE,
) -> dict[str, Any]:
    current = now or utc_now()
    with scope() as session:
        repo = BillingRepository(session)
        cancelled = expire_stale_payments(repo, now=current, batch_size=batch_size)
        expired = repo.expire_due_subscriptions(current)
    log_event(
        LOGGER,
        20,
        "billing.sweep.completed",
        cancelled_payments=cancelled,
        expired_subscriptions=expired,
    )
    return {"cancelled_payments": cancelled, "expired_subscriptions": expired}
