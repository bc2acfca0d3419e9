from __future__ import annotations

import pytest

from stratos.core.config import get_settings
from stratos.domain.plans import default_catalog
from stratos.persistence.store import InMemoryDocumentStore
from stratos.services.catalog import CatalogService


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Tests that monkeypatch env vars must not leak cached settings into later tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
async def catalog_store(store: InMemoryDocumentStore) -> InMemoryDocumentStore:
    # Most service tests need the stock catalog already bootstrapped.
    await CatalogService(store).bootstrap_catalog(default_catalog())
    return store
