from __future__ import annotations

import asyncio
import logging

import pytest

from stratos.core.config import get_settings
from stratos.core.errors import (
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    StoreUnavailableError,
    ValidationError,
)
from stratos.domain.clients import LimitsOverride, Resource, UsageDelta
from stratos.domain.plans import default_catalog
from stratos.persistence.repos import clients as clients_repo
from stratos.persistence.store import InMemoryDocumentStore
from stratos.services.catalog import CatalogService
from stratos.services.resilience import RetryPolicy
from stratos.services.usage import UsageAccountingService, UtilizationState
from stratos.tests.utils.clients import seed_client


class _AlwaysConflictStore(InMemoryDocumentStore):
    # Every compare-and-swap loses, as if another writer always got there first.
    def __init__(self) -> None:
        super().__init__()
        self.replace_calls = 0

    async def replace_document(self, collection, key, body, expected_version=None):
        self.replace_calls += 1
        raise ConflictError(f"Stale version for {collection}/{key}")


class _SlowWriteStore(InMemoryDocumentStore):
    async def replace_document(self, collection, key, body, expected_version=None):
        await asyncio.sleep(1.0)
        return await super().replace_document(collection, key, body, expected_version)


class _CatalogAfterWriteStore(InMemoryDocumentStore):
    # Catalog reads misbehave only once a client write has been committed.
    def __init__(self, *, fail: bool = False, delay_s: float = 0.0) -> None:
        super().__init__()
        self.committed = False
        self._fail = fail
        self._delay_s = delay_s

    async def replace_document(self, collection, key, body, expected_version=None):
        doc = await super().replace_document(collection, key, body, expected_version)
        self.committed = True
        return doc

    async def get_document(self, collection, key):
        if self.committed and collection == get_settings().catalog_collection:
            if self._fail:
                raise StoreUnavailableError("Document store unavailable")
            await asyncio.sleep(self._delay_s)
        return await super().get_document(collection, key)


async def _bootstrapped(store: InMemoryDocumentStore) -> InMemoryDocumentStore:
    await CatalogService(store).bootstrap_catalog(default_catalog())
    return store


@pytest.mark.asyncio
async def test_record_usage_increments_counters(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a")
    service = UsageAccountingService(catalog_store)

    first = await service.record_usage("client_a", UsageDelta(tokens=1200, storage_bytes=10))
    second = await service.record_usage("client_a", UsageDelta(projects=1, tokens=300))

    assert first.version == 2
    assert second.version == 3
    assert second.usage.projects == 1
    assert second.usage.tokens.total == 1500
    assert second.usage.storage_bytes == 10
    stored = await clients_repo.require_client(catalog_store, "client_a")
    assert stored.client.usage == second.usage


@pytest.mark.asyncio
async def test_empty_delta_does_not_write(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tokens=5)
    service = UsageAccountingService(catalog_store)

    result = await service.record_usage("client_a", UsageDelta())

    assert result.version == 1
    assert result.usage.tokens.total == 5


@pytest.mark.asyncio
async def test_negative_delta_is_rejected_without_mutation(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tokens=50)
    service = UsageAccountingService(catalog_store)

    with pytest.raises(ValidationError) as excinfo:
        await service.record_usage("client_a", UsageDelta(tokens=-5, projects=1))

    assert excinfo.value.details == {"resources": ["tokens"]}
    stored = await clients_repo.require_client(catalog_store, "client_a")
    assert stored.client.usage.tokens.total == 50
    assert stored.client.usage.projects == 0
    assert stored.version == 1


@pytest.mark.asyncio
async def test_unknown_client_raises_not_found(catalog_store) -> None:
    service = UsageAccountingService(catalog_store)

    with pytest.raises(NotFoundError):
        await service.record_usage("client_missing", UsageDelta(tokens=1))
    with pytest.raises(NotFoundError):
        await service.get_utilization("client_missing")


@pytest.mark.asyncio
async def test_other_tenant_cannot_see_client(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tenant_id="t1")
    service = UsageAccountingService(catalog_store)

    with pytest.raises(NotFoundError):
        await service.record_usage("client_a", UsageDelta(tokens=1), tenant_id="t2")

    report = await service.get_utilization("client_a", tenant_id="t1")
    assert report.client_id == "client_a"


@pytest.mark.asyncio
async def test_concurrent_increments_are_never_lost() -> None:
    store = await _bootstrapped(InMemoryDocumentStore(io_yield=True))
    await seed_client(store, client_id="client_hot")
    service = UsageAccountingService(store, retry_policy=RetryPolicy(max_attempts=60, backoff_ms=0))
    writers = 25

    results = await asyncio.gather(
        *(service.record_usage("client_hot", UsageDelta(tokens=1)) for _ in range(writers))
    )

    stored = await clients_repo.require_client(store, "client_hot")
    assert stored.client.usage.tokens.total == writers
    assert stored.version == writers + 1
    assert sorted(result.version for result in results) == list(range(2, writers + 2))


@pytest.mark.asyncio
async def test_retry_exhaustion_surfaces_conflict() -> None:
    store = await _bootstrapped(_AlwaysConflictStore())
    await seed_client(store, client_id="client_a")
    service = UsageAccountingService(store, retry_policy=RetryPolicy(max_attempts=3, backoff_ms=0))

    with pytest.raises(ConflictError):
        await service.record_usage("client_a", UsageDelta(tokens=10))

    assert store.replace_calls == 3
    stored = await clients_repo.require_client(store, "client_a")
    assert stored.client.usage.tokens.total == 0


@pytest.mark.asyncio
async def test_deadline_leaves_counters_untouched() -> None:
    store = await _bootstrapped(_SlowWriteStore())
    await seed_client(store, client_id="client_a")
    service = UsageAccountingService(store)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await service.record_usage("client_a", UsageDelta(tokens=10), timeout_s=0.05)

    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.details == {"timeout_s": 0.05}
    stored = await clients_repo.require_client(store, "client_a")
    assert stored.client.usage.tokens.total == 0
    assert stored.version == 1


@pytest.mark.asyncio
async def test_slow_crossing_check_does_not_fail_committed_increment(caplog) -> None:
    store = await _bootstrapped(_CatalogAfterWriteStore(delay_s=1.0))
    await seed_client(store, client_id="client_a")
    service = UsageAccountingService(store)
    caplog.set_level(logging.ERROR, logger="stratos.services.usage")

    result = await service.record_usage("client_a", UsageDelta(tokens=10), timeout_s=0.1)

    assert result.usage.tokens.total == 10
    assert result.crossings == ()
    stored = await clients_repo.require_client(store, "client_a")
    assert stored.client.usage.tokens.total == 10
    assert stored.version == 2
    assert any("reason=TIMEOUT" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_unreadable_catalog_does_not_fail_committed_increment(caplog) -> None:
    store = await _bootstrapped(_CatalogAfterWriteStore(fail=True))
    await seed_client(store, client_id="client_a")
    service = UsageAccountingService(store)
    caplog.set_level(logging.ERROR, logger="stratos.services.usage")

    result = await service.record_usage("client_a", UsageDelta(tokens=10))

    assert result.usage.tokens.total == 10
    assert result.crossings == ()
    assert any("reason=STORE_UNAVAILABLE" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_over_quota_usage_is_recorded_and_reported_blocked(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter")
    service = UsageAccountingService(catalog_store)

    result = await service.record_usage("client_a", UsageDelta(tokens=150_000))
    report = await service.get_utilization("client_a")

    assert result.usage.tokens.total == 150_000
    assert report.resources[Resource.TOKENS].state is UtilizationState.BLOCKED
    assert report.resources[Resource.TOKENS].percent == 150.0
    assert await service.can_consume("client_a", Resource.TOKENS, 1) is False


@pytest.mark.asyncio
async def test_threshold_crossings_are_reported_and_logged(catalog_store, caplog) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter", tokens=70_000)
    service = UsageAccountingService(catalog_store)
    caplog.set_level(logging.WARNING, logger="stratos.services.usage")

    crossing = await service.record_usage("client_a", UsageDelta(tokens=15_000))
    quiet = await service.record_usage("client_a", UsageDelta(tokens=1_000))

    assert [(c.resource, c.previous_state, c.state) for c in crossing.crossings] == [
        (Resource.TOKENS, UtilizationState.OK, UtilizationState.WARNING)
    ]
    assert quiet.crossings == ()
    assert any("usage_threshold_crossed" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_unknown_tier_does_not_fail_committed_increment(catalog_store, caplog) -> None:
    await seed_client(catalog_store, client_id="client_legacy", tier="legacy")
    service = UsageAccountingService(catalog_store)
    caplog.set_level(logging.ERROR, logger="stratos.services.usage")

    result = await service.record_usage("client_legacy", UsageDelta(tokens=5))

    assert result.usage.tokens.total == 5
    assert result.crossings == ()
    assert any("reason=unknown_tier" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_can_consume_against_zero_limit(catalog_store) -> None:
    await seed_client(
        catalog_store,
        client_id="client_a",
        limits_override=LimitsOverride(enabled=True, max_projects=0),
    )
    service = UsageAccountingService(catalog_store)

    assert await service.can_consume("client_a", Resource.PROJECTS, 0) is True
    assert await service.can_consume("client_a", Resource.PROJECTS, 1) is False
    report = await service.get_utilization("client_a")
    assert report.resources[Resource.PROJECTS].state is UtilizationState.OK


@pytest.mark.asyncio
async def test_evaluate_consumption_rejects_negative_amount(catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a")
    service = UsageAccountingService(catalog_store)

    with pytest.raises(ValidationError):
        await service.evaluate_consumption("client_a", Resource.TOKENS, -1)


@pytest.mark.asyncio
async def test_missing_catalog_is_not_found(store) -> None:
    await seed_client(store, client_id="client_a")
    service = UsageAccountingService(store)

    with pytest.raises(NotFoundError):
        await service.get_utilization("client_a")
