from __future__ import annotations

import pytest

from stratos.core.config import get_settings
from stratos.core.errors import NotFoundError, ValidationError
from stratos.domain.clients import LimitsOverride, PricingOverride, SubscriptionStatus, UsageDelta
from stratos.services.clients import ClientService, ClientUpdate
from stratos.services.usage import UsageAccountingService


@pytest.mark.asyncio
async def test_create_client_starts_with_zero_usage(catalog_store) -> None:
    client = await ClientService(catalog_store).create_client(tenant_id="t1", name="  Acme Corp ")

    assert client.id.startswith("client_")
    assert client.name == "Acme Corp"
    assert client.tier == "starter"
    assert client.subscription_status is SubscriptionStatus.ACTIVE
    assert client.usage.projects == 0
    assert client.usage.tokens.total == 0
    assert client.usage.storage_bytes == 0


@pytest.mark.asyncio
async def test_default_tier_comes_from_settings(catalog_store, monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_TIER", "pro")
    get_settings.cache_clear()

    client = await ClientService(catalog_store).create_client(tenant_id="t1", name="Acme")

    assert client.tier == "pro"


@pytest.mark.asyncio
async def test_create_client_rejects_bad_input(catalog_store) -> None:
    service = ClientService(catalog_store)

    with pytest.raises(ValidationError):
        await service.create_client(tenant_id="t1", name="Acme", tier="platinum")
    with pytest.raises(ValidationError):
        await service.create_client(tenant_id="t1", name="   ")
    with pytest.raises(ValidationError):
        await service.create_client(
            tenant_id="t1",
            name="Acme",
            limits_override=LimitsOverride(enabled=True, max_tokens=-1),
        )


@pytest.mark.asyncio
async def test_list_clients_filters_and_sorts_by_name(catalog_store) -> None:
    service = ClientService(catalog_store)
    await service.create_client(tenant_id="t1", name="Gamma Health", tier="pro")
    await service.create_client(tenant_id="t1", name="Alpha Works", tier="starter")
    await service.create_client(
        tenant_id="t1",
        name="Beta Labs",
        tier="pro",
        subscription_status=SubscriptionStatus.PAST_DUE,
    )
    await service.create_client(tenant_id="t2", name="Alpha Elsewhere")

    names = [client.name for client in await service.list_clients("t1")]
    searched = [client.name for client in await service.list_clients("t1", search="ALP")]
    pro = [client.name for client in await service.list_clients("t1", tier="pro")]
    past_due = [
        client.name
        for client in await service.list_clients("t1", status=SubscriptionStatus.PAST_DUE)
    ]

    assert names == ["Alpha Works", "Beta Labs", "Gamma Health"]
    assert searched == ["Alpha Works"]
    assert pro == ["Beta Labs", "Gamma Health"]
    assert past_due == ["Beta Labs"]


@pytest.mark.asyncio
async def test_update_client_changes_only_given_fields(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(tenant_id="t1", name="Acme")

    updated = await service.update_client(
        created.id,
        ClientUpdate(
            tier="pro",
            pricing_override=PricingOverride(enabled=True, monthly_price_cents=19900),
            add_ons={"agent_builder": True},
        ),
        tenant_id="t1",
    )
    renamed = await service.update_client(created.id, ClientUpdate(name="Acme Group"), tenant_id="t1")
    cleared = await service.update_client(created.id, ClientUpdate(pricing_override=None), tenant_id="t1")

    assert updated.tier == "pro"
    assert renamed.name == "Acme Group"
    assert renamed.pricing_override == PricingOverride(enabled=True, monthly_price_cents=19900)
    assert renamed.add_ons == {"agent_builder": True}
    assert cleared.pricing_override is None
    assert cleared.tier == "pro"


@pytest.mark.asyncio
async def test_update_client_preserves_recorded_usage(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(tenant_id="t1", name="Acme")
    await UsageAccountingService(catalog_store).record_usage(created.id, UsageDelta(tokens=42))

    updated = await service.update_client(created.id, ClientUpdate(name="Acme Two"), tenant_id="t1")

    assert updated.usage.tokens.total == 42


@pytest.mark.asyncio
async def test_update_client_rejects_unknown_tier(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(tenant_id="t1", name="Acme")

    with pytest.raises(ValidationError):
        await service.update_client(created.id, ClientUpdate(tier="platinum"), tenant_id="t1")


@pytest.mark.asyncio
async def test_cancel_keeps_the_record(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(tenant_id="t1", name="Acme")

    canceled = await service.cancel_client(created.id, tenant_id="t1")
    fetched = await service.get_client(created.id, tenant_id="t1")

    assert canceled.subscription_status is SubscriptionStatus.CANCELED
    assert fetched.subscription_status is SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_clients_are_tenant_scoped(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(tenant_id="t1", name="Acme")

    with pytest.raises(NotFoundError):
        await service.get_client(created.id, tenant_id="t2")
    with pytest.raises(NotFoundError):
        await service.update_client(created.id, ClientUpdate(name="Stolen"), tenant_id="t2")


@pytest.mark.asyncio
async def test_effective_config_view(catalog_store) -> None:
    service = ClientService(catalog_store)
    created = await service.create_client(
        tenant_id="t1",
        name="Acme",
        add_ons={"search_index": True},
        limits_override=LimitsOverride(enabled=True, max_tokens=50_000),
    )
    await UsageAccountingService(catalog_store).record_usage(created.id, UsageDelta(tokens=45_000))

    view = await service.get_effective_config(created.id, tenant_id="t1")
    stats = view.usage_stats()

    assert view.effective_config.limits.max_tokens == 50_000
    assert view.effective_config.monthly_total_cents == 9900 + 20000
    assert stats["current"]["tokens"] == {"total": 45_000}
    assert stats["limits"]["max_tokens"] == 50_000
    assert stats["utilization"]["tokens"] == 90.0
    assert stats["states"]["tokens"] == "critical"
