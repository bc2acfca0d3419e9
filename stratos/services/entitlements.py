from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from stratos.core.errors import UnknownTierError
from stratos.domain.clients import ClientAccount, LimitsOverride, PricingOverride, Resource
from stratos.domain.plans import AddOnDefinition, PlanCatalog, TierDefinition, TierLimits


@dataclass(frozen=True)
class EffectivePricing:
    monthly_price_cents: int
    is_custom: bool


@dataclass(frozen=True)
class EffectiveLimits:
    max_projects: int
    max_tokens: int
    max_storage_bytes: int

    def limit_for(self, resource: Resource) -> int:
        if resource is Resource.PROJECTS:
            return self.max_projects
        if resource is Resource.TOKENS:
            return self.max_tokens
        return self.max_storage_bytes


@dataclass(frozen=True)
class EffectiveAddOn:
    display_name: str
    monthly_price_cents: int
    billing_provider_price_ref: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class EffectiveConfig:
    """Tier, overrides and add-ons merged for one client.

    Always derived from ``(PlanCatalog, ClientAccount)`` and never persisted, so
    it cannot drift from the source records.
    """

    tier: str
    pricing: EffectivePricing
    limits: EffectiveLimits
    add_ons: Mapping[str, EffectiveAddOn] = field(default_factory=dict)

    @property
    def monthly_total_cents(self) -> int:
        # Base (or custom) price plus every enabled add-on.
        return self.pricing.monthly_price_cents + sum(
            add_on.monthly_price_cents for add_on in self.add_ons.values()
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "pricing": {
                "monthly_price_cents": self.pricing.monthly_price_cents,
                "is_custom": self.pricing.is_custom,
            },
            "limits": {
                "max_projects": self.limits.max_projects,
                "max_tokens": self.limits.max_tokens,
                "max_storage_bytes": self.limits.max_storage_bytes,
            },
            "add_ons": {
                add_on_id: {
                    "display_name": add_on.display_name,
                    "monthly_price_cents": add_on.monthly_price_cents,
                    "billing_provider_price_ref": add_on.billing_provider_price_ref,
                    "enabled": add_on.enabled,
                }
                for add_on_id, add_on in self.add_ons.items()
            },
            "monthly_total_cents": self.monthly_total_cents,
        }


def merge_pricing(tier: TierDefinition, override: PricingOverride | None) -> EffectivePricing:
    # A disabled or absent override inherits the tier price.
    if override is None or not override.enabled:
        return EffectivePricing(monthly_price_cents=tier.monthly_price_cents, is_custom=False)
    if override.monthly_price_cents is None:
        # Enabled without a price: keep the tier price but flag the client as custom.
        return EffectivePricing(monthly_price_cents=tier.monthly_price_cents, is_custom=True)
    return EffectivePricing(monthly_price_cents=override.monthly_price_cents, is_custom=True)


def merge_limits(limits: TierLimits, override: LimitsOverride | None) -> EffectiveLimits:
    # Field-level overlay: only fields present on an enabled override replace tier values.
    if override is None or not override.enabled:
        return EffectiveLimits(
            max_projects=limits.max_projects,
            max_tokens=limits.max_tokens,
            max_storage_bytes=limits.max_storage_bytes,
        )
    return EffectiveLimits(
        max_projects=_pick(override.max_projects, limits.max_projects),
        max_tokens=_pick(override.max_tokens, limits.max_tokens),
        max_storage_bytes=_pick(override.max_storage_bytes, limits.max_storage_bytes),
    )


def merge_add_ons(
    catalog_add_ons: Mapping[str, AddOnDefinition],
    client_add_ons: Mapping[str, bool],
) -> dict[str, EffectiveAddOn]:
    # Unknown or disabled add-ons are omitted rather than treated as errors.
    merged: dict[str, EffectiveAddOn] = {}
    for add_on_id in sorted(client_add_ons):
        if not client_add_ons[add_on_id]:
            continue
        definition = catalog_add_ons.get(add_on_id)
        if definition is None:
            continue
        merged[add_on_id] = EffectiveAddOn(
            display_name=definition.display_name,
            monthly_price_cents=definition.monthly_price_cents,
            billing_provider_price_ref=definition.billing_provider_price_ref,
            enabled=True,
        )
    return merged


def resolve(catalog: PlanCatalog, client: ClientAccount) -> EffectiveConfig:
    """Compute the effective configuration in force for ``client``.

    Pure and deterministic: no clock, randomness or I/O, and neither input is
    mutated. Raises ``UnknownTierError`` when the client's tier is missing from
    the catalog; callers must not fall back to another tier.
    """
    tier_def = catalog.tiers.get(client.tier)
    if tier_def is None:
        raise UnknownTierError(client.tier, client_id=client.id)
    return EffectiveConfig(
        tier=client.tier,
        pricing=merge_pricing(tier_def, client.pricing_override),
        limits=merge_limits(tier_def.limits, client.limits_override),
        add_ons=merge_add_ons(catalog.add_ons, client.add_ons),
    )


def _pick(override_value: int | None, tier_value: int) -> int:
    return tier_value if override_value is None else override_value
