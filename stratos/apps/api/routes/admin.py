from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from stratos.apps.api.deps import Principal, get_catalog_service, get_client_service, require_role
from stratos.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratos.apps.api.response import SuccessEnvelope, success_response
from stratos.domain.clients import ClientAccount, LimitsOverride, PricingOverride, SubscriptionStatus
from stratos.domain.plans import PlanCatalog
from stratos.services.catalog import CatalogService
from stratos.services.clients import ClientService, ClientUpdate


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class ClientCreateRequest(BaseModel):
    name: str
    tier: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    add_ons: dict[str, bool] = Field(default_factory=dict)
    pricing_override: PricingOverride | None = None
    limits_override: LimitsOverride | None = None


class ClientPatchRequest(BaseModel):
    # Omitted fields are left untouched; an explicit null clears an override.
    name: str | None = None
    tier: str | None = None
    subscription_status: SubscriptionStatus | None = None
    add_ons: dict[str, bool] | None = None
    pricing_override: PricingOverride | None = None
    limits_override: LimitsOverride | None = None

    def to_update(self) -> ClientUpdate:
        overrides: dict[str, Any] = {}
        for name in ("pricing_override", "limits_override"):
            if name in self.model_fields_set:
                overrides[name] = getattr(self, name)
        return ClientUpdate(
            name=self.name,
            tier=self.tier,
            subscription_status=self.subscription_status,
            add_ons=self.add_ons,
            **overrides,
        )


class EffectiveConfigResponse(BaseModel):
    client: ClientAccount
    effective_config: dict[str, Any]
    usage_stats: dict[str, Any]


@router.get("/config", response_model=SuccessEnvelope[PlanCatalog])
async def get_config(
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
    catalogs: CatalogService = Depends(get_catalog_service),
) -> dict:
    catalog = await catalogs.get_catalog()
    return success_response(request=request, data=catalog)


@router.put("/config", response_model=SuccessEnvelope[PlanCatalog])
async def put_config(
    request: Request,
    payload: PlanCatalog,
    _principal: Principal = Depends(require_role("admin")),
    catalogs: CatalogService = Depends(get_catalog_service),
) -> dict:
    # Whole-document replace; an invalid catalog is rejected before any write.
    catalog = await catalogs.replace_catalog(payload)
    return success_response(request=request, data=catalog)


@router.get("/clients", response_model=SuccessEnvelope[list[ClientAccount]])
async def list_clients(
    request: Request,
    search: str | None = Query(default=None, max_length=200),
    tier: str | None = Query(default=None),
    status: SubscriptionStatus | None = Query(default=None),
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    rows = await clients.list_clients(principal.tenant_id, search=search, tier=tier, status=status)
    return success_response(request=request, data=rows)


@router.post("/clients", status_code=201, response_model=SuccessEnvelope[ClientAccount])
async def create_client(
    request: Request,
    payload: ClientCreateRequest,
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    # Clients are always created inside the caller's tenant under a server-generated id.
    client = await clients.create_client(
        tenant_id=principal.tenant_id,
        name=payload.name,
        tier=payload.tier,
        subscription_status=payload.subscription_status,
        add_ons=payload.add_ons,
        pricing_override=payload.pricing_override,
        limits_override=payload.limits_override,
    )
    return success_response(request=request, data=client)


@router.get("/clients/{client_id}", response_model=SuccessEnvelope[ClientAccount])
async def get_client(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    client = await clients.get_client(client_id, tenant_id=principal.tenant_id)
    return success_response(request=request, data=client)


@router.patch("/clients/{client_id}", response_model=SuccessEnvelope[ClientAccount])
async def patch_client(
    client_id: str,
    request: Request,
    payload: ClientPatchRequest,
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    client = await clients.update_client(client_id, payload.to_update(), tenant_id=principal.tenant_id)
    return success_response(request=request, data=client)


@router.post("/clients/{client_id}/cancel", response_model=SuccessEnvelope[ClientAccount])
async def cancel_client(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    client = await clients.cancel_client(client_id, tenant_id=principal.tenant_id)
    return success_response(request=request, data=client)


@router.get(
    "/clients/{client_id}/effective-config",
    response_model=SuccessEnvelope[EffectiveConfigResponse],
)
async def get_effective_config(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    clients: ClientService = Depends(get_client_service),
) -> dict:
    view = await clients.get_effective_config(client_id, tenant_id=principal.tenant_id)
    payload = EffectiveConfigResponse(
        client=view.client,
        effective_config=view.effective_config.as_dict(),
        usage_stats=view.usage_stats(),
    )
    return success_response(request=request, data=payload)
