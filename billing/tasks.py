"""Celery task bodies for billing maintenance jobs."""

from __future__ import annotations

import logging
from typing import Any

from config import PAYMENT_ORDER_TTL_SECONDS
from observability import get_logger, log_event

_LOGGER = get_logger("marketplace.billing.tasks")


def run_expire_stale_payments() -> dict[str, Any]:
    """Cancel timed-out pending payments and expire lapsed subscriptions. Scheduled by Celery beat."""
    from .db import session_scope
    from .sweeper import run_payment_maintenance

    summary = run_payment_maintenance(session_scope)
    if summary["cancelled_payments"] or summary["expired_subscriptions"]:
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.expire_stale_payments.completed",
            ttl_seconds=PAYMENT_ORDER_TTL_SECONDS,
            **summary,
        )
    return summary
