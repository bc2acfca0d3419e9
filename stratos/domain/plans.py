from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TierLimits(BaseModel):
    max_projects: int
    max_tokens: int
    max_storage_bytes: int


class TierDefinition(BaseModel):
    # Named pricing/limits bundle a client is assigned to.
    display_name: str
    monthly_price_cents: int
    billing_provider_price_ref: str | None = None
    limits: TierLimits


class AddOnDefinition(BaseModel):
    # Optional priced capability enabled on top of a tier.
    display_name: str
    monthly_price_cents: int
    billing_provider_price_ref: str | None = None


class UsageThresholds(BaseModel):
    # Ratio boundaries used to classify utilization severity.
    warning: float = 0.8
    critical: float = 0.9
    blocked: float = 1.0


class PlanCatalog(BaseModel):
    # Singleton catalog document; replaced whole, never merged.
    tiers: dict[str, TierDefinition]
    add_ons: dict[str, AddOnDefinition] = Field(default_factory=dict)
    thresholds: UsageThresholds = Field(default_factory=UsageThresholds)
    updated_at: datetime | None = None


def default_catalog() -> PlanCatalog:
    """Return the stock catalog used by the operator bootstrap step."""
    gib = 1024**3
    return PlanCatalog(
        tiers={
            "starter": TierDefinition(
                display_name="Starter",
                monthly_price_cents=9900,
                billing_provider_price_ref="price_starter",
                limits=TierLimits(max_projects=3, max_tokens=100_000, max_storage_bytes=10 * gib),
            ),
            "pro": TierDefinition(
                display_name="Pro",
                monthly_price_cents=29900,
                billing_provider_price_ref="price_pro",
                limits=TierLimits(max_projects=10, max_tokens=500_000, max_storage_bytes=50 * gib),
            ),
            "firm": TierDefinition(
                display_name="Firm",
                monthly_price_cents=79900,
                billing_provider_price_ref="price_firm",
                limits=TierLimits(max_projects=25, max_tokens=2_000_000, max_storage_bytes=200 * gib),
            ),
            "enterprise": TierDefinition(
                display_name="Enterprise",
                monthly_price_cents=149900,
                billing_provider_price_ref="price_enterprise",
                limits=TierLimits(max_projects=50, max_tokens=5_000_000, max_storage_bytes=500 * gib),
            ),
        },
        add_ons={
            "agent_builder": AddOnDefinition(
                display_name="Agent Builder Toolkit",
                monthly_price_cents=1900,
                billing_provider_price_ref="price_addon_agent",
            ),
            "search_index": AddOnDefinition(
                display_name="Dedicated Search Index",
                monthly_price_cents=20000,
                billing_provider_price_ref="price_addon_search",
            ),
        },
        thresholds=UsageThresholds(warning=0.8, critical=0.9, blocked=1.0),
    )
