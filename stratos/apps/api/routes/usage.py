from __future__ import annotations

import math
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from stratos.apps.api.deps import Principal, get_usage_service, require_role
from stratos.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratos.apps.api.response import SuccessEnvelope, success_response
from stratos.domain.clients import Resource, UsageCounters, UsageDelta
from stratos.services.usage import UsageAccountingService


router = APIRouter(prefix="/clients", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class ThresholdCrossingResponse(BaseModel):
    resource: Resource
    previous_state: str
    state: str


class UsageRecordResponse(BaseModel):
    client_id: str
    usage: UsageCounters
    version: int
    crossings: list[ThresholdCrossingResponse]


class ConsumptionCheckResponse(BaseModel):
    resource: Resource
    current: int
    amount: int
    limit: int
    projected_ratio: float | None
    projected_state: str
    allowed: bool
    decision: str


@router.get("/{client_id}/utilization", response_model=SuccessEnvelope[dict[str, Any]])
async def get_utilization(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    usage: UsageAccountingService = Depends(get_usage_service),
) -> dict:
    report = await usage.get_utilization(client_id, tenant_id=principal.tenant_id)
    return success_response(request=request, data=report.as_dict())


@router.post("/{client_id}/usage", response_model=SuccessEnvelope[UsageRecordResponse])
async def record_usage(
    client_id: str,
    request: Request,
    payload: UsageDelta,
    principal: Principal = Depends(require_role("member")),
    usage: UsageAccountingService = Depends(get_usage_service),
) -> dict:
    # Over-quota usage is still recorded; gate beforehand with require_capacity.
    result = await usage.record_usage(client_id, payload, tenant_id=principal.tenant_id)
    data = UsageRecordResponse(
        client_id=result.client_id,
        usage=result.usage,
        version=result.version,
        crossings=[
            ThresholdCrossingResponse(
                resource=crossing.resource,
                previous_state=crossing.previous_state.value,
                state=crossing.state.value,
            )
            for crossing in result.crossings
        ],
    )
    return success_response(request=request, data=data)


@router.get("/{client_id}/usage/check", response_model=SuccessEnvelope[ConsumptionCheckResponse])
async def check_usage(
    client_id: str,
    request: Request,
    resource: Resource = Query(...),
    amount: int = Query(default=1),
    principal: Principal = Depends(require_role("viewer")),
    usage: UsageAccountingService = Depends(get_usage_service),
) -> dict:
    decision = await usage.evaluate_consumption(
        client_id,
        resource,
        amount,
        tenant_id=principal.tenant_id,
    )
    data = ConsumptionCheckResponse(
        resource=decision.resource,
        current=decision.current,
        amount=decision.amount,
        limit=decision.limit,
        projected_ratio=None if math.isinf(decision.projected_ratio) else decision.projected_ratio,
        projected_state=decision.projected_state.value,
        allowed=decision.allowed,
        decision=decision.decision.value,
    )
    return success_response(request=request, data=data)
