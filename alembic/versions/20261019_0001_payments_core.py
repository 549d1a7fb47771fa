"""Initialize marketplace payments schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

ENUM_LENGTH = 32


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _has_foreign_key(bind: sa.engine.Connection, table_name: str, fk_name: str) -> bool:
    inspector = sa.inspect(bind)
    return any(item.get("name") == fk_name for item in inspector.get_foreign_keys(table_name))


def _enum(*values: str, name: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=ENUM_LENGTH)


def _money() -> sa.Numeric:
    return sa.Numeric(precision=12, scale=2)


def _create_index(bind: sa.engine.Connection, table: str, name: str, columns: list[str], **kwargs) -> None:
    if not _has_index(bind, table, name):
        op.create_index(name, table, columns, **kwargs)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=True),
            sa.Column("role", sa.String(length=16), nullable=False, server_default=sa.text("'user'")),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "users", op.f("ix_users_email"), ["email"], unique=True)
    _create_index(bind, "users", op.f("ix_users_role"), ["role"], unique=False)

    if not _table_exists(bind, "billing_plans"):
        op.create_table(
            "billing_plans",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("identifier", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column("billing_period", _enum("monthly", "yearly", name="billingperiod"), nullable=False),
            sa.Column("limits", sa.JSON(), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("subscriber_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "billing_plans", op.f("ix_billing_plans_identifier"), ["identifier"], unique=True)
    _create_index(bind, "billing_plans", op.f("ix_billing_plans_active"), ["active"], unique=False)

    if not _table_exists(bind, "billing_plan_price_changes"):
        op.create_table(
            "billing_plan_price_changes",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("plan_id", sa.String(length=36), nullable=False),
            sa.Column("previous_price", _money(), nullable=True),
            sa.Column("price", _money(), nullable=False),
            sa.Column("changed_by", sa.String(length=128), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_id"], ["billing_plans.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(
        bind,
        "billing_plan_price_changes",
        op.f("ix_billing_plan_price_changes_plan_id"),
        ["plan_id"],
        unique=False,
    )
    _create_index(
        bind,
        "billing_plan_price_changes",
        op.f("ix_billing_plan_price_changes_changed_at"),
        ["changed_at"],
        unique=False,
    )

    if not _table_exists(bind, "billing_addon_services"):
        op.create_table(
            "billing_addon_services",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column("category", sa.String(length=64), nullable=False, server_default=sa.text("'general'")),
            sa.Column("billing_type", sa.String(length=32), nullable=False, server_default=sa.text("'monthly'")),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "billing_addon_services", op.f("ix_billing_addon_services_category"), ["category"], unique=False)
    _create_index(bind, "billing_addon_services", op.f("ix_billing_addon_services_active"), ["active"], unique=False)

    if not _table_exists(bind, "billing_payments"):
        op.create_table(
            "billing_payments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("gateway_order_id", sa.String(length=128), nullable=False),
            sa.Column("gateway_payment_id", sa.String(length=128), nullable=True),
            sa.Column("signature", sa.String(length=256), nullable=True),
            sa.Column("receipt", sa.String(length=64), nullable=True),
            sa.Column("amount", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column(
                "status",
                _enum("pending", "paid", "failed", "cancelled", name="paymentstatus"),
                nullable=False,
            ),
            sa.Column(
                "payment_type",
                _enum("subscription_purchase", "addon_purchase", name="paymenttype"),
                nullable=False,
            ),
            sa.Column("metadata_json", sa.JSON(), nullable=False),
            sa.Column("status_reason", sa.String(length=255), nullable=True),
            sa.Column("subscription_id", sa.String(length=36), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "billing_payments", op.f("ix_billing_payments_user_id"), ["user_id"], unique=False)
    _create_index(
        bind,
        "billing_payments",
        op.f("ix_billing_payments_gateway_order_id"),
        ["gateway_order_id"],
        unique=True,
    )
    _create_index(
        bind,
        "billing_payments",
        op.f("ix_billing_payments_gateway_payment_id"),
        ["gateway_payment_id"],
        unique=False,
    )
    _create_index(bind, "billing_payments", op.f("ix_billing_payments_status"), ["status"], unique=False)
    _create_index(
        bind,
        "billing_payments",
        op.f("ix_billing_payments_subscription_id"),
        ["subscription_id"],
        unique=False,
    )
    _create_index(bind, "billing_payments", op.f("ix_billing_payments_expires_at"), ["expires_at"], unique=False)
    _create_index(
        bind,
        "billing_payments",
        "ix_billing_payments_status_expires",
        ["status", "expires_at"],
        unique=False,
    )

    if not _table_exists(bind, "billing_payment_refunds"):
        op.create_table(
            "billing_payment_refunds",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("payment_id", sa.String(length=36), nullable=False),
            sa.Column("gateway_refund_id", sa.String(length=128), nullable=False),
            sa.Column("amount", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("refunded_by", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["payment_id"], ["billing_payments.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("gateway_refund_id"),
        )
    _create_index(
        bind,
        "billing_payment_refunds",
        op.f("ix_billing_payment_refunds_payment_id"),
        ["payment_id"],
        unique=False,
    )

    if not _table_exists(bind, "billing_subscriptions"):
        op.create_table(
            "billing_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("plan_id", sa.String(length=36), nullable=False),
            sa.Column("payment_id", sa.String(length=36), nullable=True),
            sa.Column("plan_snapshot", sa.JSON(), nullable=False),
            sa.Column(
                "status",
                _enum("active", "cancelled", "expired", name="subscriptionstatus"),
                nullable=False,
            ),
            sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("amount", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_id"], ["billing_plans.id"]),
            sa.ForeignKeyConstraint(["payment_id"], ["billing_payments.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_user_id"), ["user_id"], unique=False)
    _create_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_plan_id"), ["plan_id"], unique=False)
    _create_index(
        bind,
        "billing_subscriptions",
        op.f("ix_billing_subscriptions_payment_id"),
        ["payment_id"],
        unique=False,
    )
    _create_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_ends_at"), ["ends_at"], unique=False)
    _create_index(
        bind,
        "billing_subscriptions",
        "ix_billing_subscriptions_user_status",
        ["user_id", "status"],
        unique=False,
    )
    # At most one active subscription per user, enforced by the database.
    _create_index(
        bind,
        "billing_subscriptions",
        "uq_billing_subscriptions_one_active_per_user",
        ["user_id"],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    # SQLite cannot add constraints to an existing table.
    if bind.dialect.name != "sqlite" and not _has_foreign_key(
        bind, "billing_payments", "fk_billing_payments_subscription_id"
    ):
        op.create_foreign_key(
            "fk_billing_payments_subscription_id",
            "billing_payments",
            "billing_subscriptions",
            ["subscription_id"],
            ["id"],
        )

    if not _table_exists(bind, "billing_subscription_addons"):
        op.create_table(
            "billing_subscription_addons",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("subscription_id", sa.String(length=36), nullable=False),
            sa.Column("addon_id", sa.String(length=36), nullable=False),
            sa.Column("payment_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("price", _money(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'INR'")),
            sa.Column("category", sa.String(length=64), nullable=True),
            sa.Column("billing_type", sa.String(length=32), nullable=True),
            sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
            sa.ForeignKeyConstraint(["addon_id"], ["billing_addon_services.id"]),
            sa.ForeignKeyConstraint(["payment_id"], ["billing_payments.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("subscription_id", "addon_id", name="uq_billing_subscription_addons_pair"),
        )
    _create_index(
        bind,
        "billing_subscription_addons",
        op.f("ix_billing_subscription_addons_subscription_id"),
        ["subscription_id"],
        unique=False,
    )
    _create_index(
        bind,
        "billing_subscription_addons",
        op.f("ix_billing_subscription_addons_addon_id"),
        ["addon_id"],
        unique=False,
    )

    if not _table_exists(bind, "billing_subscription_payment_events"):
        op.create_table(
            "billing_subscription_payment_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("subscription_id", sa.String(length=36), nullable=False),
            sa.Column("payment_id", sa.String(length=36), nullable=False),
            sa.Column(
                "event_type",
                _enum("subscription_purchase", "addon_purchase", name="paymenttype"),
                nullable=False,
            ),
            sa.Column("amount", _money(), nullable=False),
            sa.Column("addon_ids", sa.JSON(), nullable=False),
            sa.Column("gateway_order_id", sa.String(length=128), nullable=False),
            sa.Column("transaction_id", sa.String(length=128), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
            sa.ForeignKeyConstraint(["payment_id"], ["billing_payments.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("payment_id"),
        )
    _create_index(
        bind,
        "billing_subscription_payment_events",
        op.f("ix_billing_subscription_payment_events_subscription_id"),
        ["subscription_id"],
        unique=False,
    )
    _create_index(
        bind,
        "billing_subscription_payment_events",
        op.f("ix_billing_subscription_payment_events_occurred_at"),
        ["occurred_at"],
        unique=False,
    )

    if not _table_exists(bind, "billing_audit_logs"):
        op.create_table(
            "billing_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'razorpay'")),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("gateway_event_id", sa.String(length=128), nullable=True),
            sa.Column("gateway_order_id", sa.String(length=128), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "source", "event_type", "gateway_event_id", "gateway_order_id", "outcome"):
        _create_index(
            bind,
            "billing_audit_logs",
            op.f(f"ix_billing_audit_logs_{column}"),
            [column],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()

    if bind.dialect.name != "sqlite" and _table_exists(bind, "billing_payments"):
        if _has_foreign_key(bind, "billing_payments", "fk_billing_payments_subscription_id"):
            op.drop_constraint("fk_billing_payments_subscription_id", "billing_payments", type_="foreignkey")

    for table_name in [
        "billing_audit_logs",
        "billing_subscription_payment_events",
        "billing_subscription_addons",
        "billing_subscriptions",
        "billing_payment_refunds",
        "billing_payments",
        "billing_addon_services",
        "billing_plan_price_changes",
        "billing_plans",
        "users",
    ]:
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
