from __future__ import annotations

import argparse
import asyncio
import sys

from stratos.core.config import get_settings
from stratos.core.errors import ConflictError
from stratos.core.logging import configure_logging
from stratos.domain.clients import (
    ClientAccount,
    SubscriptionStatus,
    TokenUsage,
    UsageCounters,
)
from stratos.domain.plans import default_catalog
from stratos.persistence.repos import clients as clients_repo
from stratos.persistence.sql_store import SqlDocumentStore
from stratos.persistence.store import DocumentStore
from stratos.services.catalog import CatalogService


GIB = 1024**3


def build_sample_clients(tenant_id: str) -> tuple[ClientAccount, ...]:
    # Fixed ids and usage so local dashboards show every utilization band.
    return (
        ClientAccount(
            id="client_acme",
            tenant_id=tenant_id,
            name="Acme Corporation",
            tier="enterprise",
            add_ons={"agent_builder": True, "search_index": False},
            usage=UsageCounters(projects=12, tokens=TokenUsage(total=770_000), storage_bytes=50 * GIB),
        ),
        ClientAccount(
            id="client_techventures",
            tenant_id=tenant_id,
            name="TechVentures Group",
            tier="pro",
            add_ons={"agent_builder": False, "search_index": True},
            usage=UsageCounters(projects=8, tokens=TokenUsage(total=320_000), storage_bytes=20 * GIB),
        ),
        ClientAccount(
            id="client_healthfirst",
            tenant_id=tenant_id,
            name="HealthFirst Systems",
            tier="starter",
            subscription_status=SubscriptionStatus.PAST_DUE,
            usage=UsageCounters(projects=2, tokens=TokenUsage(total=45_000), storage_bytes=1 * GIB),
        ),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bootstrap the plan catalog and optional sample clients")
    parser.add_argument("--tenant", default="tenant_demo", help="Tenant that owns the sample clients")
    parser.add_argument(
        "--with-sample-clients",
        action="store_true",
        help="Also create the sample client records",
    )
    parser.add_argument("--create-schema", action="store_true", help="Create tables without Alembic")
    return parser


async def seed(store: DocumentStore, *, tenant_id: str, with_sample_clients: bool) -> int:
    result = await CatalogService(store).bootstrap_catalog(default_catalog())
    if result.created:
        print(f"Created plan catalog with tiers: {', '.join(sorted(result.catalog.tiers))}")
    else:
        print("Plan catalog already exists; leaving it untouched.")

    if not with_sample_clients:
        return 0
    for client in build_sample_clients(tenant_id):
        try:
            await clients_repo.create_client(store, client)
        except ConflictError:
            print(f"Client {client.id} already exists; skipping.")
            continue
        print(f"Created sample client {client.id} ({client.tier}).")
    return 0


async def _run(args: argparse.Namespace) -> int:
    store = SqlDocumentStore.from_settings(get_settings())
    try:
        if args.create_schema:
            await store.create_schema()
        return await seed(
            store,
            tenant_id=args.tenant,
            with_sample_clients=args.with_sample_clients,
        )
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or store errors
        print(f"seed_catalog failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
