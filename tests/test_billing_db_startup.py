from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect, text

from billing.db import build_session_factory
from billing.db import init_billing_db as billing_init_billing_db


def test_init_billing_db_requires_postgres_in_production(monkeypatch) -> None:
    import billing.db as billing_db

    monkeypatch.setattr(billing_db, "APP_ENV", "production")
    monkeypatch.setattr(billing_db, "DATABASE_URL", "sqlite:///tmp/test.db")
    with pytest.raises(RuntimeError, match="PostgreSQL"):
        billing_db.init_billing_db()


def test_init_billing_db_allows_engine_override_for_tests(tmp_path: Path) -> None:
    db_path = tmp_path / "billing_startup_test.db"
    engine, _session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    billing_init_billing_db(engine)
    assert "billing_payments" in inspect(engine).get_table_names()
    engine.dispose()


def test_alembic_upgrade_builds_schema_and_is_repeatable(tmp_path: Path, monkeypatch) -> None:
    import billing.db as billing_db

    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setattr(billing_db, "APP_ENV", "dev")
    monkeypatch.setattr(billing_db, "DATABASE_URL", url)

    billing_db.init_billing_db()
    billing_db.init_billing_db()

    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assert {
            "users",
            "billing_plans",
            "billing_plan_price_changes",
            "billing_addon_services",
            "billing_payments",
            "billing_payment_refunds",
            "billing_subscriptions",
            "billing_subscription_addons",
            "billing_subscription_payment_events",
            "billing_audit_logs",
        } <= tables
        index_names = {item["name"] for item in inspector.get_indexes("billing_subscriptions")}
        assert "uq_billing_subscriptions_one_active_per_user" in index_names
        with engine.connect() as connection:
            versions = connection.execute(text("SELECT version_num FROM alembic_version")).scalars().all()
        assert versions == ["20261019_0001"]
    finally:
        engine.dispose()
