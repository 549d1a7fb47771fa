from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .db import SessionFactory, session_scope
from .models import BillingPeriod
from .repository import BillingRepository


@dataclass(frozen=True)
class SeedPlan:
    identifier: str
    name: str
    description: str
    price: Decimal
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    currency: str = "INR"
    limits: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SeedAddon:
    name: str
    description: str
    price: Decimal
    billing_type: str
    category: str
    sort_order: int
    currency: str = "INR"


DEFAULT_PLANS: tuple[SeedPlan, ...] = (
    SeedPlan(
        identifier="basic",
        name="BASIC PLAN",
        description="10 properties with top rated placement and a verified owner badge",
        price=Decimal("199.00"),
        limits={"properties": 10, "featured_listings": 2, "photos": 15, "posters": 0, "leads": 5},
    ),
    SeedPlan(
        identifier="standard",
        name="STANDARD PLAN",
        description="15 properties and one poster with 6 leads",
        price=Decimal("999.00"),
        limits={"properties": 15, "featured_listings": 3, "photos": 20, "posters": 1, "leads": 6},
    ),
    SeedPlan(
        identifier="premium",
        name="PREMIUM PLAN",
        description="Unlimited properties and four posters with 20 leads",
        price=Decimal("1999.00"),
        limits={"properties": 0, "featured_listings": 10, "photos": 30, "posters": 4, "leads": 20},
    ),
)

DEFAULT_ADDONS: tuple[SeedAddon, ...] = (
    SeedAddon(
        name="Professional Photography",
        description="High-quality property photography with professional equipment and editing",
        price=Decimal("2999.00"),
        billing_type="per_property",
        category="photography",
        sort_order=1,
    ),
    SeedAddon(
        name="Virtual Tours",
        description="360 degree virtual property tours",
        price=Decimal("4999.00"),
        billing_type="per_property",
        category="technology",
        sort_order=2,
    ),
    SeedAddon(
        name="Social Media Marketing",
        description="Promote listings across social media platforms",
        price=Decimal("1999.00"),
        billing_type="monthly",
        category="marketing",
        sort_order=3,
    ),
    SeedAddon(
        name="Property Video Creation",
        description="Property showcase videos with drone footage",
        price=Decimal("3999.00"),
        billing_type="per_property",
        category="photography",
        sort_order=4,
    ),
    SeedAddon(
        name="SEO Optimization",
        description="Enhanced search engine visibility for listings",
        price=Decimal("1499.00"),
        billing_type="monthly",
        category="marketing",
        sort_order=5,
    ),
    SeedAddon(
        name="CRM Integration",
        description="Customer relationship management tools",
        price=Decimal("999.00"),
        billing_type="monthly",
        category="crm",
        sort_order=6,
    ),
    SeedAddon(
        name="Priority Support",
        description="Priority customer support and a dedicated account manager",
        price=Decimal("2499.00"),
        billing_type="monthly",
        category="support",
        sort_order=7,
    ),
)


def seed_default_catalog(session_factory: SessionFactory | None = None) -> dict[str, int]:
    """
    Insert the default plans and add-ons when missing.

    Existing rows are left alone: prices move only through the append-only
    price change log.
    """

    plans_created = 0
    addons_created = 0
    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        for plan_seed in DEFAULT_PLANS:
            if repo.get_plan_by_identifier(plan_seed.identifier) is not None:
                continue
            repo.create_plan(
                identifier=plan_seed.identifier,
                name=plan_seed.name,
                description=plan_seed.description,
                price=plan_seed.price,
                billing_period=plan_seed.billing_period,
                currency=plan_seed.currency,
                limits=dict(plan_seed.limits),
                created_by="seed",
            )
            plans_created += 1

        existing_addons = {addon.name for addon in repo.list_addons(include_inactive=True)}
        for addon_seed in DEFAULT_ADDONS:
            if addon_seed.name in existing_addons:
                continue
            repo.create_addon(
                name=addon_seed.name,
                description=addon_seed.description,
                price=addon_seed.price,
                billing_type=addon_seed.billing_type,
                category=addon_seed.category,
                currency=addon_seed.currency,
                sort_order=addon_seed.sort_order,
            )
            addons_created += 1

    return {"plans_created": plans_created, "addons_created": addons_created}
