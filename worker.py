from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from celery import Celery
from celery.signals import task_failure

from billing.tasks import run_expire_stale_payments
from config import CELERY_ALWAYS_EAGER, PAYMENT_SWEEP_INTERVAL_SECONDS, REDIS_DISABLED, REDIS_URL
from observability import configure_json_logging, get_logger, log_event

configure_json_logging()
_LOGGER = get_logger("marketplace.worker")

EXPIRE_STALE_PAYMENTS_TASK = "billing.expire_stale_payments"

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("marketplace_payments", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "expire-stale-payments": {
        "task": EXPIRE_STALE_PAYMENTS_TASK,
        "schedule": timedelta(seconds=PAYMENT_SWEEP_INTERVAL_SECONDS),
        # A late sweep is superseded by the next one.
        "options": {"expires": PAYMENT_SWEEP_INTERVAL_SECONDS},
    },
}


@task_failure.connect  # type: ignore[misc]
def _handle_task_failure(  # noqa: ANN001
    sender=None,
    task_id=None,
    exception=None,
    **_extras,
) -> None:
    if sender is None or exception is None:
        return
    log_event(
        _LOGGER,
        logging.ERROR,
        "worker.task_failed",
        task_name=str(getattr(sender, "name", "") or ""),
        task_id=str(task_id or ""),
        error=str(exception),
    )


@celery_app.task(name=EXPIRE_STALE_PAYMENTS_TASK)
def expire_stale_payments_task() -> dict[str, Any]:
    return run_expire_stale_payments()
