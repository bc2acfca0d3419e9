from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stratos.apps.api.deps import get_store
from stratos.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratos.apps.api.response import SuccessEnvelope, success_response
from stratos.persistence.store import DocumentStore

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, store: DocumentStore = Depends(get_store)) -> dict:
    # StoreUnavailableError from the ping surfaces as 503 via the domain error handler.
    await store.ping()
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)
