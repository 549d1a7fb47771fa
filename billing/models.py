from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MONEY = Numeric(12, 2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [str(item.value) for item in enum_cls]


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Persist the lowercase values so partial indexes can match on them.
    return Enum(enum_cls, native_enum=False, values_callable=_enum_values, length=32)


class Base(DeclarativeBase):
    pass


class BillingPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentType(str, enum.Enum):
    SUBSCRIPTION_PURCHASE = "subscription_purchase"
    ADDON_PURCHASE = "addon_purchase"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="user", index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Plan(Base):
    __tablename__ = "billing_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    identifier: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    billing_period: Mapped[BillingPeriod] = mapped_column(_enum_column(BillingPeriod), default=BillingPeriod.MONTHLY)
    limits: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    subscriber_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    price_changes: Mapped[list["PlanPriceChange"]] = relationship(
        back_populates="plan", order_by="PlanPriceChange.changed_at"
    )


class PlanPriceChange(Base):
    """Append-only log of plan price mutations."""

    __tablename__ = "billing_plan_price_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    plan_id: Mapped[str] = mapped_column(ForeignKey("billing_plans.id"), index=True)
    previous_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    price: Mapped[Decimal] = mapped_column(MONEY)
    changed_by: Mapped[str] = mapped_column(String(128))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    plan: Mapped[Plan] = relationship(back_populates="price_changes")


class AddonService(Base):
    __tablename__ = "billing_addon_services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    category: Mapped[str] = mapped_column(String(64), default="general", index=True)
    billing_type: Mapped[str] = mapped_column(String(32), default="monthly")
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Payment(Base):
    """
    Ledger entry for one gateway payment intent.

    Status leaves `pending` exactly once. Every transition is a conditional
    update on `status = 'pending'` so concurrent verify/sweep calls cannot
    both win.
    """

    __tablename__ = "billing_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    gateway_order_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    receipt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), default=PaymentStatus.PENDING, index=True
    )
    payment_type: Mapped[PaymentType] = mapped_column(_enum_column(PaymentType))
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("billing_subscriptions.id", use_alter=True, name="fk_billing_payments_subscription_id"),
        nullable=True,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    refunds: Mapped[list["PaymentRefund"]] = relationship(back_populates="payment", order_by="PaymentRefund.created_at")

    @property
    def plan_id(self) -> Optional[str]:
        return (self.metadata_json or {}).get("plan_id") or None

    @property
    def addon_ids(self) -> list[str]:
        return [str(item) for item in (self.metadata_json or {}).get("addon_ids") or []]

    @property
    def billing_cycle(self) -> str:
        return str((self.metadata_json or {}).get("billing_cycle") or BillingPeriod.MONTHLY.value)

    @property
    def addon_prices(self) -> dict[str, str]:
        """Per add-on price charged at order time, as decimal strings."""

        prices = (self.metadata_json or {}).get("addon_prices") or {}
        return {str(key): str(value) for key, value in prices.items()}

    @property
    def plan_snapshot(self) -> Optional[dict[str, Any]]:
        snapshot = (self.metadata_json or {}).get("plan_snapshot")
        return dict(snapshot) if isinstance(snapshot, dict) else None


class PaymentRefund(Base):
    __tablename__ = "billing_payment_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_id: Mapped[str] = mapped_column(ForeignKey("billing_payments.id"), index=True)
    gateway_refund_id: Mapped[str] = mapped_column(String(128), unique=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    status: Mapped[str] = mapped_column(String(32), default="pending")
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_by: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    payment: Mapped[Payment] = relationship(back_populates="refunds")


class Subscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    plan_id: Mapped[str] = mapped_column(ForeignKey("billing_plans.id"), index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(ForeignKey("billing_payments.id"), nullable=True, index=True)
    plan_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), default=SubscriptionStatus.ACTIVE
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    addons: Mapped[list["SubscriptionAddon"]] = relationship(
        back_populates="subscription", order_by="SubscriptionAddon.granted_at"
    )
    events: Mapped[list["SubscriptionPaymentEvent"]] = relationship(
        back_populates="subscription", order_by="SubscriptionPaymentEvent.occurred_at"
    )


class SubscriptionAddon(Base):
    """One owned add-on; the unique pair gives the add-on list set semantics."""

    __tablename__ = "billing_subscription_addons"
    __table_args__ = (UniqueConstraint("subscription_id", "addon_id", name="uq_billing_subscription_addons_pair"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("billing_subscriptions.id"), index=True)
    addon_id: Mapped[str] = mapped_column(ForeignKey("billing_addon_services.id"), index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(ForeignKey("billing_payments.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(120))
    price: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    billing_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    subscription: Mapped[Subscription] = relationship(back_populates="addons")


class SubscriptionPaymentEvent(Base):
    """Append-only payment history of a subscription, one row per applied payment."""

    __tablename__ = "billing_subscription_payment_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("billing_subscriptions.id"), index=True)
    payment_id: Mapped[str] = mapped_column(ForeignKey("billing_payments.id"), unique=True)
    event_type: Mapped[PaymentType] = mapped_column(_enum_column(PaymentType))
    amount: Mapped[Decimal] = mapped_column(MONEY)
    addon_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    gateway_order_id: Mapped[str] = mapped_column(String(128))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    subscription: Mapped[Subscription] = relationship(back_populates="events")


class BillingAuditLog(Base):
    """
    Append-only audit trail.

    Records every gateway webhook attempt (including rejected signatures) and
    reconciliation outcomes support needs to act on.
    """

    __tablename__ = "billing_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    source: Mapped[str] = mapped_column(String(32), default="razorpay", index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    gateway_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_billing_subscriptions_user_status", Subscription.user_id, Subscription.status)
Index("ix_billing_payments_status_expires", Payment.status, Payment.expires_at)
Index(
    "uq_billing_subscriptions_one_active_per_user",
    Subscription.user_id,
    unique=True,
    sqlite_where=text("status = 'active'"),
    postgresql_where=text("status = 'active'"),
)
