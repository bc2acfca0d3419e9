from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from stratos.core.config import get_settings
from stratos.core.errors import ValidationError
from stratos.domain.clients import (
    ClientAccount,
    LimitsOverride,
    PricingOverride,
    SubscriptionStatus,
    UsageCounters,
)
from stratos.domain.plans import PlanCatalog
from stratos.persistence.repos import clients as clients_repo
from stratos.persistence.store import DocumentStore
from stratos.services.catalog import CatalogService
from stratos.services.entitlements import EffectiveConfig, resolve
from stratos.services.resilience import RetryPolicy
from stratos.services.usage import UtilizationReport, build_report


logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class EffectiveConfigView:
    # Admin view combining the stored client, its effective config and utilization.
    client: ClientAccount
    effective_config: EffectiveConfig
    utilization: UtilizationReport

    def usage_stats(self) -> dict[str, Any]:
        return {
            "current": self.client.usage.model_dump(mode="json"),
            "limits": self.effective_config.as_dict()["limits"],
            "utilization": {
                resource.value: item.percent for resource, item in self.utilization.resources.items()
            },
            "states": {
                resource.value: item.state.value for resource, item in self.utilization.resources.items()
            },
        }


@dataclass(frozen=True)
class ClientUpdate:
    """Admin-editable fields; ``None`` leaves a field untouched.

    Overrides use an explicit sentinel so callers can clear them.
    """

    name: str | None = None
    tier: str | None = None
    subscription_status: SubscriptionStatus | None = None
    add_ons: dict[str, bool] | None = None
    pricing_override: PricingOverride | None = _UNSET
    limits_override: LimitsOverride | None = _UNSET


def _validate_overrides(
    pricing_override: PricingOverride | None,
    limits_override: LimitsOverride | None,
) -> None:
    problems: list[str] = []
    if pricing_override is not None and (pricing_override.monthly_price_cents or 0) < 0:
        problems.append("pricing_override.monthly_price_cents must be non-negative")
    if limits_override is not None:
        for name in ("max_projects", "max_tokens", "max_storage_bytes"):
            value = getattr(limits_override, name)
            if value is not None and value < 0:
                problems.append(f"limits_override.{name} must be non-negative")
    if problems:
        raise ValidationError("Client overrides are invalid", details={"problems": problems})


def _require_tier(catalog: PlanCatalog, tier: str) -> None:
    # Assigning a tier the catalog does not define would corrupt resolution later.
    if tier not in catalog.tiers:
        raise ValidationError(
            f"Unknown tier: {tier}",
            details={"tier": tier, "known_tiers": sorted(catalog.tiers)},
        )


class ClientService:
    """Admin operations over client records.

    Usage counters are read-only here; only the usage accounting service writes them.
    """

    def __init__(self, store: DocumentStore, *, retry_policy: RetryPolicy | None = None) -> None:
        self._store = store
        self._catalogs = CatalogService(store)
        self._retry_policy = retry_policy

    async def create_client(
        self,
        *,
        tenant_id: str,
        name: str,
        tier: str | None = None,
        client_id: str | None = None,
        subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        add_ons: dict[str, bool] | None = None,
        pricing_override: PricingOverride | None = None,
        limits_override: LimitsOverride | None = None,
    ) -> ClientAccount:
        # Onboarding starts every counter at zero.
        if not name or not name.strip():
            raise ValidationError("Client name is required")
        catalog = await self._catalogs.get_catalog()
        resolved_tier = tier or get_settings().default_tier
        _require_tier(catalog, resolved_tier)
        _validate_overrides(pricing_override, limits_override)
        client = ClientAccount(
            id=client_id or f"client_{uuid4().hex}",
            tenant_id=tenant_id,
            name=name.strip(),
            tier=resolved_tier,
            subscription_status=subscription_status,
            pricing_override=pricing_override,
            limits_override=limits_override,
            add_ons=dict(add_ons or {}),
            usage=UsageCounters(),
        )
        created = await clients_repo.create_client(self._store, client)
        logger.info("client_created client_id=%s tenant_id=%s tier=%s", client.id, tenant_id, resolved_tier)
        return created.client

    async def get_client(self, client_id: str, *, tenant_id: str) -> ClientAccount:
        found = await clients_repo.require_client(self._store, client_id, tenant_id=tenant_id)
        return found.client

    async def list_clients(
        self,
        tenant_id: str,
        *,
        search: str | None = None,
        tier: str | None = None,
        status: SubscriptionStatus | None = None,
    ) -> list[ClientAccount]:
        return await clients_repo.list_clients(
            self._store,
            tenant_id,
            search=search,
            tier=tier,
            status=status,
        )

    async def update_client(self, client_id: str, update: ClientUpdate, *, tenant_id: str) -> ClientAccount:
        if update.name is not None and not update.name.strip():
            raise ValidationError("Client name must not be empty")
        if update.tier is not None:
            _require_tier(await self._catalogs.get_catalog(), update.tier)
        _validate_overrides(
            None if update.pricing_override is _UNSET else update.pricing_override,
            None if update.limits_override is _UNSET else update.limits_override,
        )

        def _apply(client: ClientAccount) -> ClientAccount:
            # Usage is deliberately not touched; the CAS write preserves concurrent increments.
            if update.name is not None:
                client.name = update.name.strip()
            if update.tier is not None:
                client.tier = update.tier
            if update.subscription_status is not None:
                client.subscription_status = update.subscription_status
            if update.add_ons is not None:
                client.add_ons = dict(update.add_ons)
            if update.pricing_override is not _UNSET:
                client.pricing_override = update.pricing_override
            if update.limits_override is not _UNSET:
                client.limits_override = update.limits_override
            return client

        updated = await clients_repo.mutate_client(
            self._store,
            client_id,
            _apply,
            tenant_id=tenant_id,
            policy=self._retry_policy,
        )
        logger.info("client_updated client_id=%s tenant_id=%s version=%s", client_id, tenant_id, updated.version)
        return updated.client

    async def cancel_client(self, client_id: str, *, tenant_id: str) -> ClientAccount:
        # Clients are never deleted; cancellation only moves the subscription status.
        return await self.update_client(
            client_id,
            ClientUpdate(subscription_status=SubscriptionStatus.CANCELED),
            tenant_id=tenant_id,
        )

    async def get_effective_config(self, client_id: str, *, tenant_id: str) -> EffectiveConfigView:
        found = await clients_repo.require_client(self._store, client_id, tenant_id=tenant_id)
        catalog = await self._catalogs.get_catalog()
        effective = resolve(catalog, found.client)
        return EffectiveConfigView(
            client=found.client,
            effective_config=effective,
            utilization=build_report(found.client, effective, catalog.thresholds),
        )

