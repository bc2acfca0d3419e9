from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class Resource(str, Enum):
    # Metered resources; values double as API and report keys.
    PROJECTS = "projects"
    TOKENS = "tokens"
    STORAGE = "storage"


class PricingOverride(BaseModel):
    # When enabled, replaces the tier price; a missing price keeps the tier price.
    enabled: bool = False
    monthly_price_cents: int | None = None


class LimitsOverride(BaseModel):
    # When enabled, each present field replaces the matching tier limit.
    enabled: bool = False
    max_projects: int | None = None
    max_tokens: int | None = None
    max_storage_bytes: int | None = None


class TokenUsage(BaseModel):
    total: int = 0


class UsageCounters(BaseModel):
    # Monotonic counters; only the usage accounting service mutates them.
    projects: int = 0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    storage_bytes: int = 0

    def current(self, resource: Resource) -> int:
        if resource is Resource.PROJECTS:
            return self.projects
        if resource is Resource.TOKENS:
            return self.tokens.total
        return self.storage_bytes


class ClientAccount(BaseModel):
    id: str
    tenant_id: str
    name: str
    tier: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    pricing_override: PricingOverride | None = None
    limits_override: LimitsOverride | None = None
    add_ons: dict[str, bool] = Field(default_factory=dict)
    usage: UsageCounters = Field(default_factory=UsageCounters)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UsageDelta(BaseModel):
    # Requested counter increments for a single chargeable action.
    projects: int = 0
    tokens: int = 0
    storage_bytes: int = 0

    def amount(self, resource: Resource) -> int:
        if resource is Resource.PROJECTS:
            return self.projects
        if resource is Resource.TOKENS:
            return self.tokens
        return self.storage_bytes

    def is_empty(self) -> bool:
        return self.projects == 0 and self.tokens == 0 and self.storage_bytes == 0
