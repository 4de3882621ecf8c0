"""
Document Store Abstraction
===========================

Collection-style document storage used by every component:
- Point reads and writes keyed by (collection, id)
- Equality/range/membership filters with ordering and limits
- Atomic multi-document batches, bounded at 500 operations
- ``Increment`` / ``ArrayUnion`` field mutators with dotted paths

Two backends share the same semantics: ``InMemoryDocumentStore`` for
tests and single-process use, and ``SqlDocumentStore`` persisting each
document as a JSON row through SQLAlchemy.

Architecture: Repository Pattern + Unit of Work
"""

import asyncio
import copy
import operator
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Literal, Optional, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from config.constants import BATCH_LIMITS
from core.exceptions import DocumentStoreError, EntityNotFoundError
from infrastructure.database import DatabaseManager
from infrastructure.schema import documents_table

# =============================================================================
# FIELD MUTATORS & FILTERS
# =============================================================================


@dataclass(frozen=True)
class Increment:
    """Add ``amount`` to a numeric field (missing counts as 0)."""

    amount: float = 1


@dataclass(frozen=True)
class ArrayUnion:
    """Append values not already present in an array field."""

    values: tuple

    def __init__(self, values: Iterable[Any]):
        object.__setattr__(self, "values", tuple(values))


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda actual, expected: actual in expected,
    "array_contains": lambda actual, expected: isinstance(actual, list) and expected in actual,
}


@dataclass(frozen=True)
class Filter:
    """A single ``field op value`` predicate; missing fields read as None."""

    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: dict[str, Any]) -> bool:
        actual = get_path(data, self.field)
        if actual is None and self.op not in ("==", "!=", "in"):
            return False
        try:
            return bool(_OPERATORS[self.op](actual, self.value))
        except TypeError:
            return False


@dataclass
class Document:
    id: str
    data: dict[str, Any]


@dataclass
class WriteOp:
    kind: Literal["set", "update", "delete"]
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    merge: bool = False


# =============================================================================
# PURE HELPERS
# =============================================================================


def get_path(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _resolve(existing: Any, value: Any) -> Any:
    if isinstance(value, Increment):
        return (existing or 0) + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(existing) if isinstance(existing, list) else []
        for item in value.values:
            if item not in merged:
                merged.append(item)
        return merged
    return copy.deepcopy(value)


def apply_changes(data: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with dotted-path changes and mutators applied."""
    result = copy.deepcopy(data)
    for path, value in changes.items():
        _set_path(result, path, _resolve(get_path(result, path), value))
    return result


def apply_op(current: Optional[dict[str, Any]], op: WriteOp) -> Optional[dict[str, Any]]:
    if op.kind == "delete":
        return None
    if op.kind == "update":
        if current is None:
            raise EntityNotFoundError(op.collection, op.doc_id)
        return apply_changes(current, op.data)
    base = current if (op.merge and current is not None) else {}
    return apply_changes(base, op.data)


def run_query(
    documents: Iterable[Document],
    filters: Sequence[Filter] = (),
    order_by: Optional[Sequence[str]] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> list[Document]:
    matched = [doc for doc in documents if all(f.matches(doc.data) for f in filters)]

    if order_by:
        def sort_key(doc: Document):
            # None sorts first ascending; the id breaks ties deterministically
            return tuple(
                (get_path(doc.data, name) is not None, get_path(doc.data, name))
                for name in order_by
            ) + ((True, doc.id),)

        matched.sort(key=sort_key, reverse=descending)
    else:
        matched.sort(key=lambda doc: doc.id)

    return matched[:limit] if limit is not None else matched


# =============================================================================
# ABSTRACT STORE
# =============================================================================


class WriteBatch:
    """Collects writes and commits them atomically."""

    def __init__(self, store: "DocumentStore", max_operations: int = BATCH_LIMITS.STORE_BATCH_LIMIT):
        self._store = store
        self._ops: list[WriteOp] = []
        self._max_operations = max_operations

    def __len__(self) -> int:
        return len(self._ops)

    def _append(self, op: WriteOp) -> "WriteBatch":
        if len(self._ops) >= self._max_operations:
            raise DocumentStoreError(
                f"Batch exceeds {self._max_operations} operations", collection=op.collection
            )
        self._ops.append(op)
        return self

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> "WriteBatch":
        return self._append(WriteOp("set", collection, doc_id, data, merge))

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> "WriteBatch":
        return self._append(WriteOp("update", collection, doc_id, changes))

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        return self._append(WriteOp("delete", collection, doc_id))

    async def commit(self) -> None:
        if not self._ops:
            return
        ops, self._ops = self._ops, []
        await self._store.commit(ops)


class DocumentStore(ABC):
    """Capability interface over a collection/document database."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Fetch a single document, or None."""

    @abstractmethod
    async def scan(self, collection: str) -> list[Document]:
        """Return every document of a collection."""

    @abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply all operations atomically."""

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        await self.commit([WriteOp("set", collection, doc_id, data, merge)])

    async def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None:
        await self.commit([WriteOp("update", collection, doc_id, changes)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.commit([WriteOp("delete", collection, doc_id)])

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        return run_query(await self.scan(collection), filters, order_by, descending, limit)

    def batch(self, max_operations: int = BATCH_LIMITS.STORE_BATCH_LIMIT) -> WriteBatch:
        return WriteBatch(self, max_operations)

    async def close(self) -> None:
        return None


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; batches are applied under a lock, all or nothing."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def scan(self, collection: str) -> list[Document]:
        return [
            Document(doc_id, copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
        ]

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        async with self._lock:
            staged: dict[tuple[str, str], Optional[dict[str, Any]]] = {}
            for op in ops:
                key = (op.collection, op.doc_id)
                current = (
                    staged[key]
                    if key in staged
                    else self._collections.get(op.collection, {}).get(op.doc_id)
                )
                staged[key] = apply_op(current, op)

            for (collection, doc_id), data in staged.items():
                bucket = self._collections.setdefault(collection, {})
                if data is None:
                    bucket.pop(doc_id, None)
                else:
                    bucket[doc_id] = data

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))


# =============================================================================
# SQL BACKEND
# =============================================================================


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$datetime"}:
            return datetime.fromisoformat(value["$datetime"])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


class SqlDocumentStore(DocumentStore):
    """
    Documents stored as JSON rows in a single ``documents`` table.

    Filters run in-process after a per-collection scan; collections here
    are bounded per partition, so no JSON-path indexes are required.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db = db_manager

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(documents_table.c.data).where(
                        documents_table.c.collection == collection,
                        documents_table.c.id == doc_id,
                    )
                )
                row = result.first()
        except SQLAlchemyError as e:
            logger.error(f"Document read failed | {collection}/{doc_id} | error={e}")
            raise DocumentStoreError(f"Read failed: {e}", collection=collection, cause=e) from e
        return _decode(row[0]) if row else None

    async def scan(self, collection: str) -> list[Document]:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(documents_table.c.id, documents_table.c.data).where(
                        documents_table.c.collection == collection
                    )
                )
                rows = result.all()
        except SQLAlchemyError as e:
            logger.error(f"Collection scan failed | {collection} | error={e}")
            raise DocumentStoreError(f"Scan failed: {e}", collection=collection, cause=e) from e
        return [Document(row.id, _decode(row.data)) for row in rows]

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        try:
            async with self._db.transaction() as session:
                for op in ops:
                    key_clause = (
                        documents_table.c.collection == op.collection,
                        documents_table.c.id == op.doc_id,
                    )
                    row = (
                        await session.execute(select(documents_table.c.data).where(*key_clause))
                    ).first()
                    current = _decode(row[0]) if row else None
                    new_data = apply_op(current, op)

                    if new_data is None:
                        await session.execute(delete(documents_table).where(*key_clause))
                    elif row is None:
                        await session.execute(
                            insert(documents_table).values(
                                collection=op.collection, id=op.doc_id, data=_encode(new_data)
                            )
                        )
                    else:
                        await session.execute(
                            update(documents_table).where(*key_clause).values(data=_encode(new_data))
                        )
        except SQLAlchemyError as e:
            logger.error(f"Batch commit failed | ops={len(ops)} | error={e}")
            raise DocumentStoreError(f"Commit failed: {e}", cause=e) from e

    async def close(self) -> None:
        await self._db.close()
