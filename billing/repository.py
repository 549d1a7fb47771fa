from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from config import DEFAULT_CURRENCY

from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    AddonService,
    BillingAuditLog,
    BillingPeriod,
    Payment,
    PaymentRefund,
    PaymentStatus,
    PaymentType,
    Plan,
    PlanPriceChange,
    Subscription,
    SubscriptionAddon,
    SubscriptionPaymentEvent,
    SubscriptionStatus,
    User,
)
from .pricing import to_money

SUPERSEDE_MAX_ATTEMPTS = 5
FAILED_ATTEMPT_PREFIX = "attempt failed: "


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even when the models use
    DateTime(timezone=True). Naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "deadlock" in message


def _money_sum(value: Any) -> Decimal:
    return to_money(value if value is not None else 0)


class BillingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Users (read-mostly; writes are for bootstrap and tests)

    def get_user(self, user_id: str) -> Optional[User]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.get(User, key)

    def upsert_user(
        self,
        *,
        email: str,
        user_id: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        active: bool = True,
    ) -> User:
        normalized_email = str(email or "").strip().lower()
        if not normalized_email:
            raise ValidationError("email is required")
        user = self.get_user(user_id) if user_id else None
        if user is None:
            user = self.session.scalar(select(User).where(User.email == normalized_email))
        if user is None:
            user = User(email=normalized_email)
            if user_id:
                user.id = str(user_id)
            self.session.add(user)
        user.email = normalized_email
        user.name = name
        user.role = str(role or "user").strip().lower()
        user.active = bool(active)
        self.session.flush()
        return user

    # Catalog

    def create_plan(
        self,
        *,
        identifier: str,
        name: str,
        price: Any,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        currency: str = DEFAULT_CURRENCY,
        limits: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
        active: bool = True,
        created_by: str = "system",
        now: Optional[datetime] = None,
    ) -> Plan:
        normalized = str(identifier or "").strip().lower()
        if not normalized:
            raise ValidationError("plan identifier is required")
        if self.get_plan_by_identifier(normalized) is not None:
            raise ConflictError(f"plan already exists: {normalized}")
        current = _now(now)
        plan = Plan(
            identifier=normalized,
            name=str(name or "").strip() or normalized,
            description=description,
            price=to_money(price),
            currency=str(currency or DEFAULT_CURRENCY).upper(),
            billing_period=BillingPeriod(billing_period),
            limits=dict(limits or {}),
            active=bool(active),
            subscriber_count=0,
            created_at=current,
            updated_at=current,
        )
        self.session.add(plan)
        self.session.flush()
        self.session.add(
            PlanPriceChange(
                plan_id=plan.id,
                previous_price=None,
                price=plan.price,
                changed_by=created_by,
                reason="initial price",
                changed_at=current,
            )
        )
        self.session.flush()
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        key = str(plan_id or "").strip()
        if not key:
            return None
        return self.session.get(Plan, key)

    def get_plan_by_identifier(self, identifier: str) -> Optional[Plan]:
        normalized = str(identifier or "").strip().lower()
        if not normalized:
            return None
        return self.session.scalar(select(Plan).where(Plan.identifier == normalized))

    def list_plans(self, include_inactive: bool = False) -> list[Plan]:
        query: Select[Any] = select(Plan).order_by(Plan.price.asc(), Plan.identifier.asc())
        if not include_inactive:
            query = query.where(Plan.active.is_(True))
        return list(self.session.scalars(query).all())

    def change_plan_price(
        self,
        plan_id: str,
        *,
        price: Any,
        changed_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PlanPriceChange:
        query = select(Plan).where(Plan.id == plan_id)
        if self._supports_select_for_update():
            query = query.with_for_update()
        plan = self.session.scalar(query)
        if plan is None:
            raise NotFoundError(f"plan not found: {plan_id}")
        new_price = to_money(price)
        if new_price < 0:
            raise ValidationError("price must not be negative")
        current = _now(now)
        change = PlanPriceChange(
            plan_id=plan.id,
            previous_price=plan.price,
            price=new_price,
            changed_by=str(changed_by or "system"),
            reason=reason,
            changed_at=current,
        )
        plan.price = new_price
        plan.updated_at = current
        self.session.add(change)
        self.session.flush()
        return change

    def list_plan_price_history(self, plan_id: str) -> list[PlanPriceChange]:
        query = (
            select(PlanPriceChange)
            .where(PlanPriceChange.plan_id == plan_id)
            .order_by(PlanPriceChange.changed_at.asc(), PlanPriceChange.id.asc())
        )
        return list(self.session.scalars(query).all())

    def increment_plan_subscriber_count(self, plan_id: str, *, now: Optional[datetime] = None) -> None:
        self.session.execute(
            update(Plan)
            .where(Plan.id == plan_id)
            .values(subscriber_count=Plan.subscriber_count + 1, updated_at=_now(now))
            .execution_options(synchronize_session=False)
        )

    def create_addon(
        self,
        *,
        name: str,
        price: Any,
        category: str = "general",
        billing_type: str = "monthly",
        currency: str = DEFAULT_CURRENCY,
        description: Optional[str] = None,
        active: bool = True,
        sort_order: int = 0,
    ) -> AddonService:
        addon = AddonService(
            name=str(name or "").strip(),
            description=description,
            price=to_money(price),
            currency=str(currency or DEFAULT_CURRENCY).upper(),
            category=str(category or "general").strip().lower(),
            billing_type=str(billing_type or "monthly").strip().lower(),
            active=bool(active),
            sort_order=int(sort_order),
        )
        self.session.add(addon)
        self.session.flush()
        return addon

    def get_addons(self, addon_ids: Iterable[str], *, active_only: bool = True) -> list[AddonService]:
        ordered = list(dict.fromkeys(str(item).strip() for item in addon_ids if str(item).strip()))
        if not ordered:
            return []
        query = select(AddonService).where(AddonService.id.in_(ordered))
        if active_only:
            query = query.where(AddonService.active.is_(True))
        found = {addon.id: addon for addon in self.session.scalars(query).all()}
        return [found[item] for item in ordered if item in found]

    def list_addons(self, include_inactive: bool = False) -> list[AddonService]:
        query: Select[Any] = select(AddonService).order_by(AddonService.sort_order.asc(), AddonService.name.asc())
        if not include_inactive:
            query = query.where(AddonService.active.is_(True))
        return list(self.session.scalars(query).all())

    # Payment ledger

    def create_payment(
        self,
        *,
        user_id: str,
        gateway_order_id: str,
        amount: Decimal,
        currency: str,
        payment_type: PaymentType,
        expires_at: datetime,
        receipt: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        current = _now(now)
        payment = Payment(
            user_id=user_id,
            gateway_order_id=gateway_order_id,
            amount=to_money(amount),
            currency=str(currency or DEFAULT_CURRENCY).upper(),
            status=PaymentStatus.PENDING,
            payment_type=PaymentType(payment_type),
            receipt=receipt,
            metadata_json=dict(metadata or {}),
            expires_at=_as_utc_aware(expires_at),
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(payment)
                self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"gateway order already recorded: {gateway_order_id}") from exc
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.session.get(Payment, payment_id)

    def get_payment_by_order_id(self, gateway_order_id: str) -> Optional[Payment]:
        key = str(gateway_order_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(Payment).where(Payment.gateway_order_id == key))

    def get_payment_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        key = str(gateway_payment_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(Payment).where(Payment.gateway_payment_id == key))

    def reload_payment(self, payment_id: str) -> Payment:
        payment = self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError(f"payment not found: {payment_id}")
        return payment

    def _transition_pending_payment(self, payment_id: str, *, values: dict[str, Any]) -> bool:
        """Compare-and-swap out of `pending`; False means another writer got there first."""

        result = self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = int(result.rowcount or 0) == 1
        self.reload_payment(payment_id)
        return changed

    def mark_payment_paid(
        self,
        payment_id: str,
        *,
        gateway_payment_id: str,
        signature: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        current = _now(now)
        return self._transition_pending_payment(
            payment_id,
            values={
                "status": PaymentStatus.PAID,
                "gateway_payment_id": gateway_payment_id,
                "signature": signature,
                "status_reason": None,
                "paid_at": current,
                "updated_at": current,
            },
        )

    def mark_payment_cancelled(self, payment_id: str, *, reason: str, now: Optional[datetime] = None) -> bool:
        return self._transition_pending_payment(
            payment_id,
            values={"status": PaymentStatus.CANCELLED, "status_reason": reason[:255], "updated_at": _now(now)},
        )

    def mark_payment_failed(self, payment_id: str, *, reason: str, now: Optional[datetime] = None) -> bool:
        return self._transition_pending_payment(
            payment_id,
            values={"status": PaymentStatus.FAILED, "status_reason": reason[:255], "updated_at": _now(now)},
        )

    def record_failed_attempt(
        self,
        payment_id: str,
        *,
        reason: str,
        gateway_payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Note a declined attempt on a still-pending payment.

        The order stays open: the customer may retry on the same gateway order,
        and the sweeper closes it as `failed` if no capture arrives in time.
        """

        values: dict[str, Any] = {"status_reason": f"{FAILED_ATTEMPT_PREFIX}{reason}"[:255], "updated_at": _now(now)}
        if gateway_payment_id:
            values["gateway_payment_id"] = gateway_payment_id
        result = self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.reload_payment(payment_id)
        return int(result.rowcount or 0) == 1

    def link_payment_subscription(self, payment_id: str, subscription_id: str, *, now: Optional[datetime] = None) -> None:
        self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.subscription_id.is_(None))
            .values(subscription_id=subscription_id, updated_at=_now(now))
            .execution_options(synchronize_session=False)
        )
        self.reload_payment(payment_id)

    def list_expired_pending_payments(self, *, now: Optional[datetime] = None, limit: int = 200) -> list[Payment]:
        current = _now(now)
        query = (
            select(Payment)
            .where(Payment.status == PaymentStatus.PENDING, Payment.expires_at <= current)
            .order_by(Payment.expires_at.asc())
            .limit(max(1, min(int(limit), 1000)))
        )
        return list(self.session.scalars(query).all())

    def get_refunded_total(self, payment_id: str) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(PaymentRefund.amount), 0)).where(PaymentRefund.payment_id == payment_id)
        )
        return _money_sum(total)

    def record_refund(
        self,
        *,
        payment_id: str,
        gateway_refund_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        reason: Optional[str],
        refunded_by: str,
        now: Optional[datetime] = None,
    ) -> PaymentRefund:
        existing = self.session.scalar(select(PaymentRefund).where(PaymentRefund.gateway_refund_id == gateway_refund_id))
        if existing is not None:
            return existing
        refund = PaymentRefund(
            payment_id=payment_id,
            gateway_refund_id=gateway_refund_id,
            amount=to_money(amount),
            currency=currency,
            status=str(status or "pending")[:32],
            reason=reason,
            refunded_by=refunded_by,
            created_at=_now(now),
        )
        self.session.add(refund)
        self.session.flush()
        return refund

    # Subscriptions

    def get_subscription(self, subscription_id: Optional[str]) -> Optional[Subscription]:
        if not subscription_id:
            return None
        return self.session.get(Subscription, subscription_id, populate_existing=True)

    def get_active_subscription(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        current = _now(now)
        query = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.ends_at > current,
            )
            .order_by(Subscription.ends_at.desc())
            .limit(1)
        )
        if self._supports_select_for_update():
            query = query.with_for_update()
        return self.session.scalar(query)

    def count_active_subscriptions(self, user_id: str) -> int:
        count = self.session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
        )
        return int(count or 0)

    def _cancel_active_subscriptions(self, user_id: str, *, reason: str, now: datetime) -> list[str]:
        query = select(Subscription.id).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        if self._supports_select_for_update():
            query = query.with_for_update()
        ids = [str(item) for item in self.session.scalars(query).all()]
        if not ids:
            return []
        self.session.execute(
            update(Subscription)
            .where(Subscription.id.in_(ids), Subscription.status == SubscriptionStatus.ACTIVE)
            .values(
                status=SubscriptionStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return ids

    def supersede_active_subscription(
        self,
        *,
        user_id: str,
        build: Callable[[], Subscription],
        now: Optional[datetime] = None,
    ) -> tuple[Subscription, list[str]]:
        """
        Cancel the user's active subscription(s) and insert a new active one.

        The partial unique index on active rows rejects a concurrent second
        insert; the loser retries inside a fresh savepoint and supersedes the
        winner instead of coexisting with it.
        """

        current = _now(now)
        last_error: Exception | None = None
        for attempt in range(SUPERSEDE_MAX_ATTEMPTS):
            try:
                with self.session.begin_nested():
                    cancelled_ids = self._cancel_active_subscriptions(user_id, reason="superseded", now=current)
                    subscription = build()
                    self.session.add(subscription)
                    self.session.flush()
                for subscription_id in cancelled_ids:
                    self.get_subscription(subscription_id)
                return subscription, cancelled_ids
            except IntegrityError as exc:
                last_error = exc
                time.sleep(0.01 * (attempt + 1))
            except OperationalError as exc:
                if not _is_lock_error(exc):
                    raise
                last_error = exc
                time.sleep(0.02 * (attempt + 1))
        raise ConflictError(f"could not activate subscription for user={user_id}") from last_error

    def cancel_subscription(self, subscription_id: str, *, reason: str, now: Optional[datetime] = None) -> bool:
        current = _now(now)
        result = self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .values(
                status=SubscriptionStatus.CANCELLED,
                cancelled_at=current,
                cancellation_reason=reason[:255],
                updated_at=current,
            )
            .execution_options(synchronize_session=False)
        )
        self.get_subscription(subscription_id)
        return int(result.rowcount or 0) == 1

    def expire_due_subscriptions(self, now: Optional[datetime] = None) -> int:
        current = _now(now)
        result = self.session.execute(
            update(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.ends_at <= current,
            )
            .values(status=SubscriptionStatus.EXPIRED, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def add_subscription_addon(
        self,
        subscription_id: str,
        addon: AddonService,
        *,
        payment_id: Optional[str],
        price: Any = None,
        now: Optional[datetime] = None,
    ) -> Optional[SubscriptionAddon]:
        """Append-if-absent. Returns None when the add-on is already owned.

        ``price`` is what the payment charged for the add-on; the catalog price is
        used only when none was recorded.
        """

        row = SubscriptionAddon(
            subscription_id=subscription_id,
            addon_id=addon.id,
            payment_id=payment_id,
            name=addon.name,
            price=to_money(addon.price if price is None else price),
            currency=addon.currency,
            category=addon.category,
            billing_type=addon.billing_type,
            granted_at=_now(now),
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except IntegrityError:
            return None
        return row

    def list_subscription_addons(self, subscription_id: str) -> list[SubscriptionAddon]:
        query = (
            select(SubscriptionAddon)
            .where(SubscriptionAddon.subscription_id == subscription_id)
            .order_by(SubscriptionAddon.granted_at.asc(), SubscriptionAddon.id.asc())
        )
        return list(self.session.scalars(query).all())

    def increment_subscription_amount(
        self,
        subscription_id: str,
        delta: Decimal,
        *,
        now: Optional[datetime] = None,
    ) -> Subscription:
        self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(amount=Subscription.amount + to_money(delta), updated_at=_now(now))
            .execution_options(synchronize_session=False)
        )
        subscription = self.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"subscription not found: {subscription_id}")
        return subscription

    def record_payment_event(
        self,
        *,
        subscription_id: str,
        payment: Payment,
        event_type: PaymentType,
        amount: Decimal,
        addon_ids: list[str],
        now: Optional[datetime] = None,
    ) -> SubscriptionPaymentEvent:
        event = SubscriptionPaymentEvent(
            subscription_id=subscription_id,
            payment_id=payment.id,
            event_type=PaymentType(event_type),
            amount=to_money(amount),
            addon_ids=list(addon_ids),
            gateway_order_id=payment.gateway_order_id,
            transaction_id=payment.gateway_payment_id,
            occurred_at=_now(now),
        )
        self.session.add(event)
        self.session.flush()
        return event

    def get_payment_event(self, payment_id: str) -> Optional[SubscriptionPaymentEvent]:
        return self.session.scalar(select(SubscriptionPaymentEvent).where(SubscriptionPaymentEvent.payment_id == payment_id))

    def list_payment_events(self, subscription_id: str) -> list[SubscriptionPaymentEvent]:
        query = (
            select(SubscriptionPaymentEvent)
            .where(SubscriptionPaymentEvent.subscription_id == subscription_id)
            .order_by(SubscriptionPaymentEvent.occurred_at.asc(), SubscriptionPaymentEvent.id.asc())
        )
        return list(self.session.scalars(query).all())

    # Stats

    def payment_stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        current = _now(now)
        month_start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        payment_counts = {status.value: 0 for status in PaymentStatus}
        for status, count in self.session.execute(select(Payment.status, func.count()).group_by(Payment.status)).all():
            payment_counts[PaymentStatus(status).value] = int(count or 0)

        subscription_counts = {status.value: 0 for status in SubscriptionStatus}
        for status, count in self.session.execute(
            select(Subscription.status, func.count()).group_by(Subscription.status)
        ).all():
            subscription_counts[SubscriptionStatus(status).value] = int(count or 0)

        total_revenue = self.session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.status == PaymentStatus.PAID)
        )
        monthly_revenue = self.session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.status == PaymentStatus.PAID,
                Payment.paid_at >= month_start,
            )
        )
        refunded = self.session.scalar(select(func.coalesce(func.sum(PaymentRefund.amount), 0)))
        return {
            "payments": payment_counts,
            "subscriptions": {"total": sum(subscription_counts.values()), **subscription_counts},
            "total_revenue": _money_sum(total_revenue),
            "monthly_revenue": _money_sum(monthly_revenue),
            "total_refunded": _money_sum(refunded),
        }

    # Audit

    def record_audit_log(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        source: str = "razorpay",
        signature_valid: bool = False,
        gateway_event_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> BillingAuditLog:
        log = BillingAuditLog(
            source=str(source or "razorpay")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            gateway_event_id=str(gateway_event_id)[:128] if gateway_event_id else None,
            gateway_order_id=str(gateway_order_id)[:128] if gateway_order_id else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=_now(occurred_at),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        gateway_order_id: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> list[BillingAuditLog]:
        query = select(BillingAuditLog).order_by(BillingAuditLog.occurred_at.desc())
        if gateway_order_id:
            query = query.where(BillingAuditLog.gateway_order_id == gateway_order_id)
        if outcome:
            query = query.where(BillingAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def _supports_select_for_update(self) -> bool:
        bind = self.session.get_bind()
        dialect_name = str(getattr(getattr(bind, "dialect", None), "name", "")).lower()
        return dialect_name not in {"sqlite"}
