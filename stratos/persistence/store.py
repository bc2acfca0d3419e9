from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from stratos.core.errors import ConflictError, NotFoundError, ValidationError


@dataclass(frozen=True)
class Document:
    # A stored body plus the version token used for compare-and-swap writes.
    collection: str
    key: str
    body: dict[str, Any]
    version: int


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class Contains:
    # Substring match on a string field; case-insensitive by default.
    field: str
    value: str
    case_insensitive: bool = True


@dataclass(frozen=True)
class Range:
    # Inclusive/exclusive numeric bounds; unset bounds are open.
    field: str
    gte: float | None = None
    gt: float | None = None
    lte: float | None = None
    lt: float | None = None


Predicate = Eq | Contains | Range


@dataclass(frozen=True)
class Query:
    # AND-combined predicates with an optional single-field ascending sort.
    predicates: tuple[Predicate, ...] = field(default_factory=tuple)
    order_by: str | None = None


class DocumentStore(Protocol):
    async def get_document(self, collection: str, key: str) -> Document | None: ...

    async def create_document(self, collection: str, body: dict[str, Any]) -> Document: ...

    async def replace_document(
        self,
        collection: str,
        key: str,
        body: dict[str, Any],
        expected_version: int | None = None,
    ) -> Document: ...

    async def query_documents(self, collection: str, query: Query) -> list[Document]: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


def document_key(body: dict[str, Any]) -> str:
    # Documents are keyed by their id field, mirroring the persisted layout.
    key = body.get("id")
    if not isinstance(key, str) or not key:
        raise ValidationError("Document body requires a non-empty string id")
    return key


def field_value(body: dict[str, Any], path: str) -> Any:
    # Resolve dotted paths such as "usage.tokens.total"; missing segments yield None.
    current: Any = body
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def matches(body: dict[str, Any], predicate: Predicate) -> bool:
    value = field_value(body, predicate.field)
    if isinstance(predicate, Eq):
        return value == predicate.value
    if isinstance(predicate, Contains):
        if not isinstance(value, str):
            return False
        if predicate.case_insensitive:
            return predicate.value.lower() in value.lower()
        return predicate.value in value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if predicate.gte is not None and value < predicate.gte:
        return False
    if predicate.gt is not None and value <= predicate.gt:
        return False
    if predicate.lte is not None and value > predicate.lte:
        return False
    if predicate.lt is not None and value >= predicate.lt:
        return False
    return True


def _sort_key(order_by: str):
    def _key(doc: Document) -> tuple[int, str, str]:
        value = field_value(doc.body, order_by)
        # Case-insensitive text order, key as tiebreak, missing values last like SQL NULLS LAST.
        if value is None:
            return (1, "", doc.key)
        return (0, str(value).lower(), doc.key)

    return _key


class InMemoryDocumentStore:
    """Process-local store with the same versioning semantics as the SQL store.

    ``io_yield`` inserts a scheduling point before every operation so tests can
    interleave concurrent callers the way network round-trips would.
    """

    def __init__(self, *, io_yield: bool = False) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()
        self._io_yield = io_yield

    async def _io(self) -> None:
        if self._io_yield:
            await asyncio.sleep(0)

    async def get_document(self, collection: str, key: str) -> Document | None:
        await self._io()
        doc = self._collections.get(collection, {}).get(key)
        return _copy(doc) if doc else None

    async def create_document(self, collection: str, body: dict[str, Any]) -> Document:
        await self._io()
        key = document_key(body)
        async with self._lock:
            docs = self._collections.setdefault(collection, {})
            if key in docs:
                raise ConflictError(f"Document already exists: {collection}/{key}")
            doc = Document(collection=collection, key=key, body=copy.deepcopy(body), version=1)
            docs[key] = doc
        return _copy(doc)

    async def replace_document(
        self,
        collection: str,
        key: str,
        body: dict[str, Any],
        expected_version: int | None = None,
    ) -> Document:
        await self._io()
        async with self._lock:
            docs = self._collections.get(collection, {})
            existing = docs.get(key)
            if existing is None:
                raise NotFoundError(f"Document not found: {collection}/{key}")
            if expected_version is not None and existing.version != expected_version:
                raise ConflictError(
                    f"Stale version for {collection}/{key}",
                    details={"expected_version": expected_version, "current_version": existing.version},
                )
            doc = Document(
                collection=collection,
                key=key,
                body=copy.deepcopy(body),
                version=existing.version + 1,
            )
            docs[key] = doc
        return _copy(doc)

    async def query_documents(self, collection: str, query: Query) -> list[Document]:
        require_predicates(query.predicates)
        await self._io()
        results = [
            _copy(doc)
            for doc in self._collections.get(collection, {}).values()
            if all(matches(doc.body, predicate) for predicate in query.predicates)
        ]
        if query.order_by:
            results.sort(key=_sort_key(query.order_by))
        return results

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None


def _copy(doc: Document) -> Document:
    # Hand out deep copies so callers can never mutate stored state in place.
    return Document(
        collection=doc.collection,
        key=doc.key,
        body=copy.deepcopy(doc.body),
        version=doc.version,
    )


def build_query(*predicates: Predicate, order_by: str | None = None) -> Query:
    return Query(predicates=tuple(predicates), order_by=order_by)


def require_predicates(predicates: Sequence[Predicate]) -> None:
    # Reject empty field paths early; they would match nothing in SQL and everything in memory.
    for predicate in predicates:
        if not predicate.field:
            raise ValidationError("Query predicate requires a field path")
