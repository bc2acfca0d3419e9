from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from stratos.apps.api.errors import (
    http_exception_handler,
    stratos_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from stratos.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from stratos.apps.api.routes.admin import router as admin_router
from stratos.apps.api.routes.health import router as health_router
from stratos.apps.api.routes.usage import router as usage_router
from stratos.core.config import Settings, get_settings
from stratos.core.errors import StratosError
from stratos.core.logging import configure_logging
from stratos.persistence.sql_store import SqlDocumentStore
from stratos.persistence.store import DocumentStore, InMemoryDocumentStore


logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> DocumentStore:
    backend = settings.store_backend.strip().lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "sql":
        return SqlDocumentStore.from_settings(settings)
    raise ValueError(f"Unsupported store backend: {settings.store_backend}")


def create_app(store: DocumentStore | None = None) -> FastAPI:
    """Build the API application.

    Passing ``store`` injects an already-open store (tests, embedding); otherwise
    the lifespan opens one from settings and closes it on shutdown.
    """
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if store is not None:
            app.state.store = store
            yield
            return
        owned = build_store(settings)
        app.state.store = owned
        logger.info("store_opened backend=%s", settings.store_backend)
        try:
            yield
        finally:
            await owned.close()
            logger.info("store_closed backend=%s", settings.store_backend)

    app = FastAPI(title="Stratos API", lifespan=lifespan)
    if store is not None:
        # Available before lifespan startup so ASGI test transports work without it.
        app.state.store = store

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Honor an upstream request id so logs correlate across services.
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    # FastAPI HTTPException subclasses the Starlette one, so one handler covers both.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StratosError, stratos_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Operator-facing catalog and client management.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
