from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from stratos.core.config import get_settings
from stratos.domain.plans import PlanCatalog
from stratos.persistence.store import DocumentStore


def _location() -> tuple[str, str]:
    settings = get_settings()
    return settings.catalog_collection, settings.catalog_document_id


def _to_body(catalog: PlanCatalog, document_id: str) -> dict[str, Any]:
    body = catalog.model_dump(mode="json")
    body["id"] = document_id
    return body


def _from_body(body: dict[str, Any]) -> PlanCatalog:
    # The id field is a storage concern and not part of the catalog model.
    payload = {key: value for key, value in body.items() if key != "id"}
    return PlanCatalog.model_validate(payload)


async def get_catalog(store: DocumentStore) -> PlanCatalog | None:
    collection, document_id = _location()
    doc = await store.get_document(collection, document_id)
    if doc is None:
        return None
    return _from_body(doc.body)


async def create_catalog(store: DocumentStore, catalog: PlanCatalog) -> PlanCatalog:
    collection, document_id = _location()
    stamped = catalog.model_copy(update={"updated_at": datetime.now(timezone.utc)})
    doc = await store.create_document(collection, _to_body(stamped, document_id))
    return _from_body(doc.body)


async def replace_catalog(store: DocumentStore, catalog: PlanCatalog) -> PlanCatalog:
    # Whole-document replace; the previous catalog is never merged into the new one.
    collection, document_id = _location()
    stamped = catalog.model_copy(update={"updated_at": datetime.now(timezone.utc)})
    doc = await store.replace_document(collection, document_id, _to_body(stamped, document_id))
    return _from_body(doc.body)
