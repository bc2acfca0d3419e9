from __future__ import annotations

from dataclasses import dataclass
import logging

from stratos.core.errors import CatalogValidationError, ConflictError, NotFoundError
from stratos.domain.plans import PlanCatalog, UsageThresholds
from stratos.persistence.repos import catalog as catalog_repo
from stratos.persistence.repos import clients as clients_repo
from stratos.persistence.store import DocumentStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BootstrapResult:
    catalog: PlanCatalog
    created: bool


def _threshold_problems(thresholds: UsageThresholds) -> list[str]:
    problems: list[str] = []
    if not 0.0 < thresholds.warning < 1.0:
        problems.append("thresholds.warning must be within (0, 1)")
    if not 0.0 < thresholds.critical < 1.0:
        problems.append("thresholds.critical must be within (0, 1)")
    if thresholds.blocked < 1.0:
        problems.append("thresholds.blocked must be >= 1.0")
    if thresholds.warning >= thresholds.critical:
        problems.append("thresholds.warning must be below thresholds.critical")
    if thresholds.critical > thresholds.blocked:
        problems.append("thresholds.critical must not exceed thresholds.blocked")
    return problems


def validate_catalog(catalog: PlanCatalog) -> None:
    """Check catalog invariants and raise ``CatalogValidationError`` listing every violation."""
    problems = _threshold_problems(catalog.thresholds)

    if not catalog.tiers:
        problems.append("catalog must define at least one tier")
    for tier_id, tier in sorted(catalog.tiers.items()):
        if not tier_id.strip():
            problems.append("tier ids must be non-empty")
        if tier.monthly_price_cents < 0:
            problems.append(f"tiers.{tier_id}.monthly_price_cents must be non-negative")
        for name in ("max_projects", "max_tokens", "max_storage_bytes"):
            if getattr(tier.limits, name) < 0:
                problems.append(f"tiers.{tier_id}.limits.{name} must be non-negative")

    seen: dict[str, str] = {}
    for add_on_id, add_on in sorted(catalog.add_ons.items()):
        normalized = add_on_id.strip().lower()
        if not normalized:
            problems.append("add-on ids must be non-empty")
            continue
        if normalized in seen:
            problems.append(f"add-on id {add_on_id!r} duplicates {seen[normalized]!r}")
        else:
            seen[normalized] = add_on_id
        if add_on.monthly_price_cents < 0:
            problems.append(f"add_ons.{add_on_id}.monthly_price_cents must be non-negative")

    if problems:
        raise CatalogValidationError(problems)


class CatalogService:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_catalog(self) -> PlanCatalog:
        catalog = await catalog_repo.get_catalog(self._store)
        if catalog is None:
            raise NotFoundError("Plan catalog has not been bootstrapped")
        return catalog

    async def replace_catalog(self, catalog: PlanCatalog) -> PlanCatalog:
        # Validate first so an invalid payload never touches the stored catalog.
        validate_catalog(catalog)
        replaced = await catalog_repo.replace_catalog(self._store, catalog)
        await self._warn_orphaned_tiers(replaced)
        logger.info(
            "catalog_replaced tiers=%s add_ons=%s",
            ",".join(sorted(replaced.tiers)),
            ",".join(sorted(replaced.add_ons)),
        )
        return replaced

    async def bootstrap_catalog(self, catalog: PlanCatalog) -> BootstrapResult:
        # Operator bootstrap creates the singleton once; an existing catalog is left as-is.
        validate_catalog(catalog)
        existing = await catalog_repo.get_catalog(self._store)
        if existing is not None:
            return BootstrapResult(catalog=existing, created=False)
        try:
            created = await catalog_repo.create_catalog(self._store, catalog)
        except ConflictError:
            # Another operator bootstrapped concurrently; theirs wins.
            existing = await self.get_catalog()
            return BootstrapResult(catalog=existing, created=False)
        logger.info("catalog_bootstrapped tiers=%s", ",".join(sorted(created.tiers)))
        return BootstrapResult(catalog=created, created=True)

    async def _warn_orphaned_tiers(self, catalog: PlanCatalog) -> None:
        # Clients on removed tiers will fail resolution until reassigned; surface it loudly.
        in_use = await clients_repo.list_tiers_in_use(self._store)
        orphaned = sorted(in_use - set(catalog.tiers))
        if orphaned:
            logger.warning("catalog_tiers_orphaned tiers=%s", ",".join(orphaned))
