from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import math
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from stratos.core.errors import NotFoundError, StratosError, UnknownTierError, ValidationError
from stratos.domain.clients import ClientAccount, Resource, TokenUsage, UsageCounters, UsageDelta
from stratos.domain.plans import PlanCatalog, UsageThresholds
from stratos.persistence.repos import catalog as catalog_repo
from stratos.persistence.repos import clients as clients_repo
from stratos.persistence.store import DocumentStore
from stratos.services.entitlements import EffectiveConfig, EffectiveLimits, resolve
from stratos.services.resilience import RetryPolicy, default_timeout_s, run_with_deadline


logger = logging.getLogger(__name__)


class UtilizationState(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"


_SEVERITY = {
    UtilizationState.OK: 0,
    UtilizationState.WARNING: 1,
    UtilizationState.CRITICAL: 2,
    UtilizationState.BLOCKED: 3,
}


class Decision(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True)
class ResourceUtilization:
    resource: Resource
    current: int
    limit: int
    ratio: float
    state: UtilizationState

    @property
    def remaining(self) -> int:
        return max(self.limit - self.current, 0)

    @property
    def percent(self) -> float | None:
        # Infinite ratios (usage against a zero limit) have no finite percentage.
        if math.isinf(self.ratio):
            return None
        return round(self.ratio * 100.0, 2)


@dataclass(frozen=True)
class UtilizationReport:
    client_id: str
    tier: str
    resources: dict[Resource, ResourceUtilization]

    @property
    def worst_state(self) -> UtilizationState:
        return max((item.state for item in self.resources.values()), key=_SEVERITY.__getitem__)

    def as_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "tier": self.tier,
            "worst_state": self.worst_state.value,
            "resources": {
                resource.value: {
                    "current": item.current,
                    "limit": item.limit,
                    "ratio": None if math.isinf(item.ratio) else item.ratio,
                    "percent": item.percent,
                    "remaining": item.remaining,
                    "state": item.state.value,
                }
                for resource, item in self.resources.items()
            },
        }


@dataclass(frozen=True)
class ConsumptionDecision:
    resource: Resource
    current: int
    amount: int
    limit: int
    projected_ratio: float
    projected_state: UtilizationState
    allowed: bool

    @property
    def decision(self) -> Decision:
        if not self.allowed:
            return Decision.BLOCK
        if self.projected_state is UtilizationState.OK:
            return Decision.ALLOW
        return Decision.WARN


@dataclass(frozen=True)
class ThresholdCrossing:
    resource: Resource
    previous_state: UtilizationState
    state: UtilizationState


@dataclass(frozen=True)
class UsageRecordResult:
    client_id: str
    usage: UsageCounters
    version: int
    crossings: tuple[ThresholdCrossing, ...] = ()


def utilization_ratio(current: int, limit: int) -> float:
    # Never divide by zero: usage against a zero limit is infinitely over quota.
    if limit == 0:
        return math.inf if current > 0 else 0.0
    return current / limit


def classify(ratio: float, thresholds: UsageThresholds) -> UtilizationState:
    # Ascending severity; the first matching band wins.
    if ratio < thresholds.warning:
        return UtilizationState.OK
    if ratio < thresholds.critical:
        return UtilizationState.WARNING
    if ratio < thresholds.blocked:
        return UtilizationState.CRITICAL
    return UtilizationState.BLOCKED


def build_report(
    client: ClientAccount,
    effective: EffectiveConfig,
    thresholds: UsageThresholds,
) -> UtilizationReport:
    resources: dict[Resource, ResourceUtilization] = {}
    for resource in Resource:
        current = client.usage.current(resource)
        limit = effective.limits.limit_for(resource)
        ratio = utilization_ratio(current, limit)
        resources[resource] = ResourceUtilization(
            resource=resource,
            current=current,
            limit=limit,
            ratio=ratio,
            state=classify(ratio, thresholds),
        )
    return UtilizationReport(client_id=client.id, tier=effective.tier, resources=resources)


def evaluate(
    *,
    resource: Resource,
    current: int,
    amount: int,
    limits: EffectiveLimits,
    thresholds: UsageThresholds,
) -> ConsumptionDecision:
    limit = limits.limit_for(resource)
    projected_ratio = utilization_ratio(current + amount, limit)
    return ConsumptionDecision(
        resource=resource,
        current=current,
        amount=amount,
        limit=limit,
        projected_ratio=projected_ratio,
        projected_state=classify(projected_ratio, thresholds),
        allowed=projected_ratio < thresholds.blocked,
    )


def apply_delta(usage: UsageCounters, delta: UsageDelta) -> UsageCounters:
    return UsageCounters(
        projects=usage.projects + delta.projects,
        tokens=TokenUsage(total=usage.tokens.total + delta.tokens),
        storage_bytes=usage.storage_bytes + delta.storage_bytes,
    )


def validate_delta(delta: UsageDelta) -> None:
    # Counters are monotonic; decrements only happen through an administrative reset.
    negative = [resource.value for resource in Resource if delta.amount(resource) < 0]
    if negative:
        raise ValidationError(
            "Usage deltas must be non-negative",
            details={"resources": negative},
        )


class UsageAccountingService:
    """Records consumption against client counters and evaluates it against limits.

    The store handle is injected; the service holds no per-client state.
    """

    def __init__(self, store: DocumentStore, *, retry_policy: RetryPolicy | None = None) -> None:
        self._store = store
        self._retry_policy = retry_policy

    async def record_usage(
        self,
        client_id: str,
        delta: UsageDelta,
        *,
        tenant_id: str | None = None,
        timeout_s: float | None = None,
    ) -> UsageRecordResult:
        """Atomically add ``delta`` to the client's counters.

        Over-quota usage is still recorded; gating is the caller's job via
        ``can_consume``. Conflicting concurrent writers are retried with backoff.
        The deadline bounds the write only; once the increment is committed the
        call succeeds, and threshold crossings get whatever budget remains.
        """
        validate_delta(delta)
        budget_s = default_timeout_s() if timeout_s is None else timeout_s
        loop = asyncio.get_running_loop()
        started = loop.time()
        updated, before = await run_with_deadline(
            self._commit_usage(client_id, delta, tenant_id=tenant_id),
            timeout_s=budget_s,
            operation="record_usage",
        )
        if before is None:
            return UsageRecordResult(client_id=client_id, usage=updated.client.usage, version=updated.version)

        remaining_s = max(budget_s - (loop.time() - started), 0.0)
        crossings = await self._detect_crossings(before, updated.client, delta, timeout_s=remaining_s)
        return UsageRecordResult(
            client_id=client_id,
            usage=updated.client.usage,
            version=updated.version,
            crossings=crossings,
        )

    async def _commit_usage(
        self,
        client_id: str,
        delta: UsageDelta,
        *,
        tenant_id: str | None,
    ) -> tuple[clients_repo.VersionedClient, UsageCounters | None]:
        if delta.is_empty():
            current = await clients_repo.require_client(self._store, client_id, tenant_id=tenant_id)
            return current, None

        previous: dict[str, UsageCounters] = {}

        def _increment(client: ClientAccount) -> ClientAccount:
            # Remember the counters this attempt started from for crossing detection.
            previous["usage"] = client.usage
            client.usage = apply_delta(client.usage, delta)
            return client

        updated = await clients_repo.mutate_client(
            self._store,
            client_id,
            _increment,
            tenant_id=tenant_id,
            policy=self._retry_policy,
        )
        logger.info(
            "usage_recorded client_id=%s projects=%s tokens=%s storage_bytes=%s version=%s",
            client_id,
            delta.projects,
            delta.tokens,
            delta.storage_bytes,
            updated.version,
        )
        return updated, previous["usage"]

    async def _detect_crossings(
        self,
        before: UsageCounters,
        client: ClientAccount,
        delta: UsageDelta,
        *,
        timeout_s: float,
    ) -> tuple[ThresholdCrossing, ...]:
        # Best effort: the increment is already committed and must not be reported as failed.
        try:
            return await run_with_deadline(
                self._crossings(before, client, delta),
                timeout_s=timeout_s,
                operation="usage_crossings",
            )
        except (StratosError, PydanticValidationError) as exc:
            logger.error(
                "usage_crossings_skipped reason=%s client_id=%s",
                getattr(exc, "code", "catalog_unreadable"),
                client.id,
            )
            return ()

    async def _crossings(
        self,
        before: UsageCounters,
        client: ClientAccount,
        delta: UsageDelta,
    ) -> tuple[ThresholdCrossing, ...]:
        catalog = await catalog_repo.get_catalog(self._store)
        if catalog is None:
            logger.error("usage_crossings_skipped reason=catalog_missing client_id=%s", client.id)
            return ()
        try:
            effective = resolve(catalog, client)
        except UnknownTierError:
            logger.error("usage_crossings_skipped reason=unknown_tier client_id=%s tier=%s", client.id, client.tier)
            return ()

        crossings: list[ThresholdCrossing] = []
        for resource in Resource:
            if delta.amount(resource) == 0:
                continue
            limit = effective.limits.limit_for(resource)
            old_state = classify(utilization_ratio(before.current(resource), limit), catalog.thresholds)
            new_state = classify(utilization_ratio(client.usage.current(resource), limit), catalog.thresholds)
            if _SEVERITY[new_state] > _SEVERITY[old_state]:
                logger.warning(
                    "usage_threshold_crossed client_id=%s resource=%s from=%s to=%s",
                    client.id,
                    resource.value,
                    old_state.value,
                    new_state.value,
                )
                crossings.append(ThresholdCrossing(resource, old_state, new_state))
        return tuple(crossings)

    async def get_utilization(
        self,
        client_id: str,
        *,
        tenant_id: str | None = None,
        timeout_s: float | None = None,
    ) -> UtilizationReport:
        return await run_with_deadline(
            self._get_utilization(client_id, tenant_id=tenant_id),
            timeout_s=timeout_s,
            operation="get_utilization",
        )

    async def _get_utilization(self, client_id: str, *, tenant_id: str | None) -> UtilizationReport:
        client, catalog = await self._load(client_id, tenant_id=tenant_id)
        return build_report(client, resolve(catalog, client), catalog.thresholds)

    async def evaluate_consumption(
        self,
        client_id: str,
        resource: Resource,
        amount: int,
        *,
        tenant_id: str | None = None,
        timeout_s: float | None = None,
    ) -> ConsumptionDecision:
        if amount < 0:
            raise ValidationError("Consumption amount must be non-negative", details={"amount": amount})
        return await run_with_deadline(
            self._evaluate_consumption(client_id, resource, amount, tenant_id=tenant_id),
            timeout_s=timeout_s,
            operation="evaluate_consumption",
        )

    async def _evaluate_consumption(
        self,
        client_id: str,
        resource: Resource,
        amount: int,
        *,
        tenant_id: str | None,
    ) -> ConsumptionDecision:
        client, catalog = await self._load(client_id, tenant_id=tenant_id)
        effective = resolve(catalog, client)
        return evaluate(
            resource=resource,
            current=client.usage.current(resource),
            amount=amount,
            limits=effective.limits,
            thresholds=catalog.thresholds,
        )

    async def can_consume(
        self,
        client_id: str,
        resource: Resource,
        amount: int,
        *,
        tenant_id: str | None = None,
        timeout_s: float | None = None,
    ) -> bool:
        # Advisory: record_usage never refuses an increment on its own.
        decision = await self.evaluate_consumption(
            client_id, resource, amount, tenant_id=tenant_id, timeout_s=timeout_s
        )
        return decision.allowed

    async def _load(self, client_id: str, *, tenant_id: str | None) -> tuple[ClientAccount, PlanCatalog]:
        found = await clients_repo.require_client(self._store, client_id, tenant_id=tenant_id)
        catalog = await catalog_repo.get_catalog(self._store)
        if catalog is None:
            raise NotFoundError("Plan catalog has not been bootstrapped")
        return found.client, catalog
