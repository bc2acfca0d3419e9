from __future__ import annotations

from contextlib import asynccontextmanager
from enum import Enum
import logging
from typing import Any, AsyncIterator

from sqlalchemy import and_, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from stratos.core.config import Settings
from stratos.core.errors import ConflictError, NotFoundError, StoreUnavailableError
from stratos.domain.models import Base, StoredDocument
from stratos.persistence.db import create_engine, create_sessionmaker
from stratos.persistence.store import (
    Contains,
    Document,
    Eq,
    Predicate,
    Query,
    document_key,
    require_predicates,
)


logger = logging.getLogger(__name__)


class SqlDocumentStore:
    """Document store over a single SQL table with a version column.

    Conditional ``UPDATE ... WHERE version = :expected`` gives compare-and-swap
    semantics, so concurrent writers never overwrite each other silently.
    Ordering in SQL compares the sort field as text.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._engine = engine
        self._sessionmaker = sessionmaker or create_sessionmaker(engine)

    @classmethod
    def from_settings(cls, settings: Settings, *, database_url: str | None = None) -> "SqlDocumentStore":
        return cls(create_engine(settings, database_url=database_url))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        # Used by tests and local sqlite runs; deployments apply Alembic migrations.
        async with self._guard("create_schema"):
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        # Translate driver failures so callers only see the store error taxonomy.
        try:
            yield
        except SQLAlchemyError as exc:
            logger.warning("document_store_failure operation=%s", operation, exc_info=exc)
            raise StoreUnavailableError("Document store unavailable") from exc

    async def get_document(self, collection: str, key: str) -> Document | None:
        async with self._guard("get"):
            async with self._sessionmaker() as session:
                row = await session.get(StoredDocument, (collection, key))
                return _to_document(row) if row is not None else None

    async def create_document(self, collection: str, body: dict[str, Any]) -> Document:
        key = document_key(body)
        async with self._guard("create"):
            async with self._sessionmaker() as session:
                row = StoredDocument(collection=collection, key=key, body=body, version=1)
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise ConflictError(f"Document already exists: {collection}/{key}") from exc
                return Document(collection=collection, key=key, body=body, version=1)

    async def replace_document(
        self,
        collection: str,
        key: str,
        body: dict[str, Any],
        expected_version: int | None = None,
    ) -> Document:
        stmt = update(StoredDocument).where(
            StoredDocument.collection == collection,
            StoredDocument.key == key,
        )
        if expected_version is not None:
            stmt = stmt.where(StoredDocument.version == expected_version)
        stmt = (
            stmt.values(body=body, version=StoredDocument.version + 1, updated_at=func.now())
            .returning(StoredDocument.version)
            .execution_options(synchronize_session=False)
        )
        async with self._guard("replace"):
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                new_version = result.scalar_one_or_none()
                if new_version is None:
                    await session.rollback()
                    current = await session.scalar(
                        select(StoredDocument.version).where(
                            StoredDocument.collection == collection,
                            StoredDocument.key == key,
                        )
                    )
                    if current is None:
                        raise NotFoundError(f"Document not found: {collection}/{key}")
                    raise ConflictError(
                        f"Stale version for {collection}/{key}",
                        details={"expected_version": expected_version, "current_version": current},
                    )
                await session.commit()
                return Document(collection=collection, key=key, body=body, version=int(new_version))

    async def query_documents(self, collection: str, query: Query) -> list[Document]:
        require_predicates(query.predicates)
        stmt = select(StoredDocument).where(StoredDocument.collection == collection)
        for predicate in query.predicates:
            stmt = stmt.where(_predicate_clause(predicate))
        if query.order_by:
            stmt = stmt.order_by(
                func.lower(_json_field(query.order_by).as_string()).nulls_last(),
                StoredDocument.key,
            )
        async with self._guard("query"):
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_to_document(row) for row in rows]

    async def ping(self) -> None:
        async with self._guard("ping"):
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        await self._engine.dispose()


def _to_document(row: StoredDocument) -> Document:
    return Document(
        collection=row.collection,
        key=row.key,
        body=dict(row.body),
        version=int(row.version),
    )


def _json_field(path: str):
    parts = tuple(path.split("."))
    if len(parts) == 1:
        return StoredDocument.body[parts[0]]
    return StoredDocument.body[parts]


def _predicate_clause(predicate: Predicate):
    element = _json_field(predicate.field)
    if isinstance(predicate, Eq):
        value = predicate.value
        if isinstance(value, Enum):
            value = value.value
        if value is None:
            return element.as_string().is_(None)
        if isinstance(value, bool):
            return element.as_boolean() == value
        if isinstance(value, int):
            return element.as_integer() == value
        if isinstance(value, float):
            return element.as_float() == value
        return element.as_string() == str(value)
    if isinstance(predicate, Contains):
        if predicate.case_insensitive:
            return func.lower(element.as_string()).contains(predicate.value.lower(), autoescape=True)
        return element.as_string().contains(predicate.value, autoescape=True)
    numeric = element.as_float()
    clauses = []
    if predicate.gte is not None:
        clauses.append(numeric >= predicate.gte)
    if predicate.gt is not None:
        clauses.append(numeric > predicate.gt)
    if predicate.lte is not None:
        clauses.append(numeric <= predicate.lte)
    if predicate.lt is not None:
        clauses.append(numeric < predicate.lt)
    if not clauses:
        return numeric.is_not(None)
    return and_(*clauses)
