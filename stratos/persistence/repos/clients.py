from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from stratos.core.config import get_settings
from stratos.core.errors import NotFoundError
from stratos.domain.clients import ClientAccount, SubscriptionStatus
from stratos.persistence.store import Contains, DocumentStore, Eq, Predicate, build_query
from stratos.services.resilience import RetryPolicy, retry_async


@dataclass(frozen=True)
class VersionedClient:
    # Client record plus the store version it was read at.
    client: ClientAccount
    version: int


def _collection() -> str:
    return get_settings().clients_collection


def _to_body(client: ClientAccount) -> dict[str, Any]:
    return client.model_dump(mode="json")


async def get_client(
    store: DocumentStore,
    client_id: str,
    *,
    tenant_id: str | None = None,
) -> VersionedClient | None:
    # Tenant mismatches look like missing clients so ids never leak across tenants.
    doc = await store.get_document(_collection(), client_id)
    if doc is None:
        return None
    client = ClientAccount.model_validate(doc.body)
    if tenant_id is not None and client.tenant_id != tenant_id:
        return None
    return VersionedClient(client=client, version=doc.version)


async def require_client(
    store: DocumentStore,
    client_id: str,
    *,
    tenant_id: str | None = None,
) -> VersionedClient:
    found = await get_client(store, client_id, tenant_id=tenant_id)
    if found is None:
        raise NotFoundError(f"Client not found: {client_id}", details={"client_id": client_id})
    return found


async def create_client(store: DocumentStore, client: ClientAccount) -> VersionedClient:
    doc = await store.create_document(_collection(), _to_body(client))
    return VersionedClient(client=ClientAccount.model_validate(doc.body), version=doc.version)


async def list_clients(
    store: DocumentStore,
    tenant_id: str,
    *,
    search: str | None = None,
    tier: str | None = None,
    status: SubscriptionStatus | None = None,
) -> list[ClientAccount]:
    # Stable name ordering keeps admin listings deterministic.
    predicates: list[Predicate] = [Eq("tenant_id", tenant_id)]
    if search:
        predicates.append(Contains("name", search))
    if tier:
        predicates.append(Eq("tier", tier))
    if status is not None:
        predicates.append(Eq("subscription_status", status.value))
    docs = await store.query_documents(_collection(), build_query(*predicates, order_by="name"))
    return [ClientAccount.model_validate(doc.body) for doc in docs]


async def list_tiers_in_use(store: DocumentStore) -> set[str]:
    # Scan every tenant; only used for rare administrator-triggered catalog writes.
    docs = await store.query_documents(_collection(), build_query())
    return {str(doc.body.get("tier")) for doc in docs if doc.body.get("tier")}


async def mutate_client(
    store: DocumentStore,
    client_id: str,
    mutate: Callable[[ClientAccount], ClientAccount],
    *,
    tenant_id: str | None = None,
    policy: RetryPolicy | None = None,
) -> VersionedClient:
    """Apply ``mutate`` as one compare-and-swap write, retrying on version conflicts.

    Each attempt re-reads the record, so ``mutate`` must be a pure function of
    the client it receives. A write either lands completely or not at all.
    """

    async def _attempt() -> VersionedClient:
        current = await require_client(store, client_id, tenant_id=tenant_id)
        updated = mutate(current.client.model_copy(deep=True))
        updated = updated.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        doc = await store.replace_document(
            _collection(),
            client_id,
            _to_body(updated),
            expected_version=current.version,
        )
        return VersionedClient(client=updated, version=doc.version)

    return await retry_async(_attempt, policy=policy, operation=f"client_mutation client_id={client_id}")
