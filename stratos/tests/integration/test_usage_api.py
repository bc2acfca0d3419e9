from __future__ import annotations

from fastapi import APIRouter, Depends
import pytest
from httpx import ASGITransport, AsyncClient

from stratos.apps.api.deps import Principal, require_capacity
from stratos.apps.api.main import create_app
from stratos.core.errors import StoreUnavailableError
from stratos.domain.clients import LimitsOverride, Resource
from stratos.persistence.store import InMemoryDocumentStore
from stratos.tests.utils.clients import auth_headers, seed_client


def _gated_app(store):
    # A downstream feature route mounted behind the capacity gate.
    app = create_app(store=store)
    router = APIRouter()

    @router.post("/v1/clients/{client_id}/projects")
    async def create_project(
        client_id: str,
        principal: Principal = Depends(require_capacity(Resource.PROJECTS)),
    ) -> dict:
        return {"client_id": client_id, "tenant_id": principal.tenant_id}

    @router.post("/v1/clients/{client_id}/uploads")
    async def upload(
        client_id: str,
        principal: Principal = Depends(
            require_capacity(
                Resource.STORAGE,
                lambda request: int(request.headers.get("X-Upload-Bytes", "0")),
            )
        ),
    ) -> dict:
        return {"client_id": client_id}

    app.include_router(router)
    return app


@pytest.fixture
async def api(catalog_store) -> AsyncClient:
    app = _gated_app(catalog_store)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_record_usage_and_read_utilization(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter", tokens=70_000)

    recorded = await api.post(
        "/v1/clients/client_a/usage",
        json={"tokens": 15_000, "storage_bytes": 1024},
        headers=auth_headers(roles="member"),
    )
    utilization = await api.get("/v1/clients/client_a/utilization", headers=auth_headers(roles="viewer"))

    assert recorded.status_code == 200
    data = recorded.json()["data"]
    assert data["usage"]["tokens"] == {"total": 85_000}
    assert data["version"] == 2
    assert data["crossings"] == [{"resource": "tokens", "previous_state": "ok", "state": "warning"}]

    report = utilization.json()["data"]
    assert report["tier"] == "starter"
    assert report["resources"]["tokens"]["state"] == "warning"
    assert report["resources"]["tokens"]["percent"] == 85.0
    assert report["resources"]["tokens"]["remaining"] == 15_000
    assert report["worst_state"] == "warning"


@pytest.mark.asyncio
async def test_record_usage_requires_member_role(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a")

    response = await api.post(
        "/v1/clients/client_a/usage",
        json={"tokens": 1},
        headers=auth_headers(roles="viewer"),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_negative_usage_is_a_validation_error(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a")

    response = await api.post(
        "/v1/clients/client_a/usage",
        json={"tokens": -10},
        headers=auth_headers(roles="member"),
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"] == {"resources": ["tokens"]}


@pytest.mark.asyncio
async def test_usage_routes_are_tenant_scoped(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tenant_id="t1")

    response = await api.get(
        "/v1/clients/client_a/utilization",
        headers=auth_headers(tenant_id="t2", roles="viewer"),
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_usage_check_reports_decision(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter", tokens=99_999)

    warn = await api.get(
        "/v1/clients/client_a/usage/check",
        params={"resource": "tokens", "amount": 0},
        headers=auth_headers(roles="viewer"),
    )
    block = await api.get(
        "/v1/clients/client_a/usage/check",
        params={"resource": "tokens", "amount": 1},
        headers=auth_headers(roles="viewer"),
    )

    assert warn.json()["data"]["decision"] == "warn"
    assert warn.json()["data"]["allowed"] is True
    blocked = block.json()["data"]
    assert blocked["decision"] == "block"
    assert blocked["allowed"] is False
    assert blocked["projected_state"] == "blocked"
    assert blocked["limit"] == 100_000


@pytest.mark.asyncio
async def test_usage_check_against_zero_limit_has_no_finite_ratio(api, catalog_store) -> None:
    await seed_client(
        catalog_store,
        client_id="client_a",
        limits_override=LimitsOverride(enabled=True, max_projects=0),
    )

    response = await api.get(
        "/v1/clients/client_a/usage/check",
        params={"resource": "projects", "amount": 1},
        headers=auth_headers(roles="viewer"),
    )

    assert response.status_code == 200
    assert response.json()["data"]["projected_ratio"] is None
    assert response.json()["data"]["allowed"] is False


@pytest.mark.asyncio
async def test_capacity_gate_allows_then_blocks(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter", projects=1)

    allowed = await api.post("/v1/clients/client_a/projects", headers=auth_headers(roles="member"))
    await api.post("/v1/clients/client_a/usage", json={"projects": 1}, headers=auth_headers(roles="member"))
    blocked = await api.post("/v1/clients/client_a/projects", headers=auth_headers(roles="member"))

    assert allowed.status_code == 200
    assert allowed.json() == {"client_id": "client_a", "tenant_id": "t1"}
    assert blocked.status_code == 402
    error = blocked.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"] == {"resource": "projects", "current": 2, "amount": 1, "limit": 3}


@pytest.mark.asyncio
async def test_capacity_gate_reads_amount_from_request(api, catalog_store) -> None:
    await seed_client(catalog_store, client_id="client_a", tier="starter")
    limit = 10 * 1024**3

    small = await api.post(
        "/v1/clients/client_a/uploads",
        headers={**auth_headers(roles="member"), "X-Upload-Bytes": "1024"},
    )
    huge = await api.post(
        "/v1/clients/client_a/uploads",
        headers={**auth_headers(roles="member"), "X-Upload-Bytes": str(limit)},
    )

    assert small.status_code == 200
    assert huge.status_code == 402


@pytest.mark.asyncio
async def test_health_reports_store_status(api) -> None:
    response = await api.get("/v1/health")

    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}


class _DownStore(InMemoryDocumentStore):
    async def ping(self) -> None:
        raise StoreUnavailableError("Document store unavailable")


@pytest.mark.asyncio
async def test_health_returns_503_when_store_is_down() -> None:
    app = create_app(store=_DownStore())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/health")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"
