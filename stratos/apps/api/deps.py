from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from stratos.domain.clients import Resource
from stratos.persistence.store import DocumentStore
from stratos.services.catalog import CatalogService
from stratos.services.clients import ClientService
from stratos.services.usage import UsageAccountingService


logger = logging.getLogger(__name__)

ROLE_ORDER: dict[str, int] = {
    "viewer": 1,
    "member": 2,
    "admin": 3,
}


class Principal(BaseModel):
    # Identity asserted by the trusted upstream gateway.
    user_id: str
    tenant_id: str
    roles: list[str] = Field(default_factory=list)


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, roles: list[str], minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    required = ROLE_ORDER.get(minimum_role, 0)
    return any(ROLE_ORDER.get(role, 0) >= required for role in roles)


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _principal_from_headers(request: Request) -> Principal:
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise _auth_error("X-User-Id header is required")
    roles: list[str] = []
    for raw in (request.headers.get("X-Roles") or "").split(","):
        if not raw.strip():
            continue
        try:
            roles.append(normalize_role(raw))
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
            ) from exc
    return Principal(user_id=user_id, tenant_id=tenant_id, roles=roles)


async def get_current_principal(request: Request) -> Principal:
    # Authentication happens upstream; the gateway forwards the verified identity as headers.
    principal = _principal_from_headers(request)
    request.state.principal = principal
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(roles=principal.roles, minimum_role=minimum_role):
            logger.info(
                "rbac_forbidden user_id=%s tenant_id=%s required_role=%s",
                principal.user_id,
                principal.tenant_id,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def get_store(request: Request) -> DocumentStore:
    # The application lifespan owns the store; handlers only borrow it.
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "STORE_UNAVAILABLE", "message": "Document store is not initialized"},
        )
    return store


def get_catalog_service(store: DocumentStore = Depends(get_store)) -> CatalogService:
    return CatalogService(store)


def get_client_service(store: DocumentStore = Depends(get_store)) -> ClientService:
    return ClientService(store)


def get_usage_service(store: DocumentStore = Depends(get_store)) -> UsageAccountingService:
    return UsageAccountingService(store)


def require_capacity(
    resource: Resource,
    amount: int | Callable[[Request], int] = 1,
    *,
    client_id_param: str = "client_id",
) -> Callable[..., Awaitable[Principal]]:
    """Gate a route on the client having room for ``amount`` more of ``resource``.

    Downstream features (project creation, chat turns, uploads) mount this
    before doing work. ``amount`` may be a callable reading the request when the
    cost depends on it. Raises 402 ``QUOTA_EXCEEDED`` when the projected ratio
    reaches the blocked threshold.
    """

    async def _dependency(
        request: Request,
        principal: Principal = Depends(require_role("member")),
        usage: UsageAccountingService = Depends(get_usage_service),
    ) -> Principal:
        client_id = request.path_params[client_id_param]
        requested = amount(request) if callable(amount) else amount
        decision = await usage.evaluate_consumption(
            client_id,
            resource,
            requested,
            tenant_id=principal.tenant_id,
        )
        if not decision.allowed:
            logger.info(
                "quota_exceeded client_id=%s resource=%s current=%s amount=%s limit=%s",
                client_id,
                resource.value,
                decision.current,
                decision.amount,
                decision.limit,
            )
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "code": "QUOTA_EXCEEDED",
                    "message": "Usage would exceed the plan limit",
                    "resource": resource.value,
                    "current": decision.current,
                    "amount": decision.amount,
                    "limit": decision.limit,
                },
            )
        return principal

    return _dependency
