"""
Document store abstraction and its backends.

Documents are plain JSON-compatible dicts. Reads return the body plus the
store-managed ``id`` and ``version`` keys; writes never persist those keys.
Every successful write bumps ``version`` by one, and writes may be made
conditional on the version the caller last read.

Backends:
- MemoryDocumentStore: in-process, used for development and tests
- PostgresDocumentStore: JSONB rows on a psycopg async connection pool
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from errors import AlreadyExists, NotFound, PersistenceFailure, VersionConflict

logger = logging.getLogger(__name__)

RESERVED_KEYS = ("id", "version")


def _strip_reserved(data: dict) -> dict:
    return {k: v for k, v in data.items() if k not in RESERVED_KEYS}


def split_path(path: str) -> list[str]:
    parts = path.split(".")
    if not path or any(p == "" for p in parts):
        raise PersistenceFailure(f"Invalid field path: {path!r}")
    if parts[0] in RESERVED_KEYS:
        raise PersistenceFailure(f"Field path targets a reserved key: {path!r}")
    return parts


def set_path(document: dict, path: str, value: Any) -> None:
    """
    Assign ``value`` at a dotted field path; numeric segments index lists.

    Only the last segment may name a new key. Every intermediate key and
    every list element on the way must already exist.
    """
    parts = split_path(path)
    target: Any = document
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        if isinstance(target, list):
            if not part.isdigit() or int(part) >= len(target):
                raise PersistenceFailure(f"Field path {path!r} has no list element {part!r}")
            if last:
                target[int(part)] = value
            else:
                target = target[int(part)]
        elif isinstance(target, dict):
            if last:
                target[part] = value
            elif part not in target:
                raise PersistenceFailure(f"Field path {path!r} has no key {part!r}")
            else:
                target = target[part]
        else:
            raise PersistenceFailure(f"Field path {path!r} crosses a scalar at {part!r}")


class DocumentStore(ABC):
    """Async document store keyed by (collection, id)."""

    async def connect(self) -> None:
        """Open backend resources. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Return the document with ``id``/``version`` keys, or None."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Return documents whose top-level fields equal every filter value."""

    @abstractmethod
    async def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        """Insert a new document at version 1 and return its id."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """Apply dotted field-path assignments and return the new version."""

    @abstractmethod
    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict,
        expected_version: Optional[int] = None,
    ) -> int:
        """Replace (or create) the whole document and return the new version."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; returns False when it did not exist."""


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class MemoryDocumentStore(DocumentStore):
    """
    Dict-backed store.

    Reads and writes deep-copy so callers can never mutate stored state
    through a returned document.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, tuple[dict, int]]] = {}

    def _bucket(self, collection: str) -> dict[str, tuple[dict, int]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _materialize(doc_id: str, data: dict, version: int) -> dict:
        return {**copy.deepcopy(data), "id": doc_id, "version": version}

    def _check_version(self, collection: str, doc_id: str, expected: Optional[int]) -> None:
        if expected is None:
            return
        current = self._bucket(collection).get(doc_id)
        actual = current[1] if current else None
        if actual != expected:
            raise VersionConflict(collection, doc_id, expected, actual)

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        entry = self._bucket(collection).get(doc_id)
        if entry is None:
            return None
        return self._materialize(doc_id, *entry)

    async def query(self, collection, filters=None, order_by=None, descending=False, limit=None):
        filters = filters or {}
        results = [
            self._materialize(doc_id, data, version)
            for doc_id, (data, version) in self._bucket(collection).items()
            if all(data.get(k) == v for k, v in filters.items())
        ]
        if order_by:
            # Missing values sort last in both directions
            present = [d for d in results if d.get(order_by) is not None]
            missing = [d for d in results if d.get(order_by) is None]
            present.sort(key=lambda d: d[order_by], reverse=descending)
            results = present + missing
        if limit is not None:
            results = results[:limit]
        return results

    async def create(self, collection, data, doc_id=None):
        doc_id = doc_id or uuid.uuid4().hex
        bucket = self._bucket(collection)
        if doc_id in bucket:
            raise AlreadyExists(collection, doc_id)
        bucket[doc_id] = (copy.deepcopy(_strip_reserved(data)), 1)
        return doc_id

    async def update(self, collection, doc_id, fields, expected_version=None):
        bucket = self._bucket(collection)
        if doc_id not in bucket:
            raise NotFound(collection, doc_id)
        self._check_version(collection, doc_id, expected_version)
        data, version = bucket[doc_id]
        updated = copy.deepcopy(data)
        for path, value in fields.items():
            set_path(updated, path, copy.deepcopy(value))
        bucket[doc_id] = (updated, version + 1)
        return version + 1

    async def set(self, collection, doc_id, data, expected_version=None):
        bucket = self._bucket(collection)
        self._check_version(collection, doc_id, expected_version)
        version = bucket[doc_id][1] + 1 if doc_id in bucket else 1
        bucket[doc_id] = (copy.deepcopy(_strip_reserved(data)), version)
        return version

    async def delete(self, collection, doc_id):
        return self._bucket(collection).pop(doc_id, None) is not None


# ============================================================================
# POSTGRES BACKEND
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (collection, id)
)
"""


class PostgresDocumentStore(DocumentStore):
    """
    JSONB document table on PostgreSQL.

    Field-path updates compile to nested ``jsonb_set`` calls and conditional
    writes add ``version = %s`` to the WHERE clause, so a stale writer
    updates zero rows instead of clobbering a newer document.
    """

    def __init__(self, conninfo: str, max_size: int = 10):
        self.conninfo = conninfo
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    async def connect(self) -> None:
        """Open the pool and make sure the documents table exists."""
        if self._pool is None:
            self._pool = AsyncConnectionPool(
                conninfo=self.conninfo,
                max_size=self.max_size,
                kwargs={"autocommit": True, "prepare_threshold": 0},
                open=False,
            )
            await self._pool.open()
            async with self._pool.connection() as conn:
                await conn.execute(SCHEMA_SQL)
            logger.info("Document store connected to PostgreSQL")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError("Document store not connected. Call connect() first.")
        return self._pool

    async def _fetch(self, query, params) -> list[tuple]:
        try:
            async with self._require_pool().connection() as conn:
                cur = await conn.execute(query, params)
                return await cur.fetchall()
        except psycopg.Error as e:
            logger.error(f"[PostgresStore] Query failed: {e}")
            raise PersistenceFailure(str(e)) from e

    async def _current_version(self, collection: str, doc_id: str) -> Optional[int]:
        rows = await self._fetch(
            "SELECT version FROM documents WHERE collection = %s AND id = %s",
            (collection, doc_id),
        )
        return rows[0][0] if rows else None

    async def get(self, collection, doc_id):
        rows = await self._fetch(
            "SELECT data, version FROM documents WHERE collection = %s AND id = %s",
            (collection, doc_id),
        )
        if not rows:
            return None
        data, version = rows[0]
        return {**data, "id": doc_id, "version": version}

    async def query(self, collection, filters=None, order_by=None, descending=False, limit=None):
        clauses = [sql.SQL("collection = %s")]
        params: list[Any] = [collection]
        for field, value in (filters or {}).items():
            clauses.append(sql.SQL("data -> %s::text = %s"))
            params.extend([field, Jsonb(value)])

        query = sql.SQL("SELECT id, data, version FROM documents WHERE {}").format(
            sql.SQL(" AND ").join(clauses)
        )
        if order_by:
            query += sql.SQL(" ORDER BY data -> {} {} NULLS LAST").format(
                sql.Literal(order_by),
                sql.SQL("DESC" if descending else "ASC"),
            )
        if limit is not None:
            query += sql.SQL(" LIMIT %s")
            params.append(limit)

        rows = await self._fetch(query, params)
        return [{**data, "id": doc_id, "version": version} for doc_id, data, version in rows]

    async def create(self, collection, data, doc_id=None):
        doc_id = doc_id or uuid.uuid4().hex
        rows = await self._fetch(
            "INSERT INTO documents (collection, id, data, version) VALUES (%s, %s, %s, 1) "
            "ON CONFLICT DO NOTHING RETURNING id",
            (collection, doc_id, Jsonb(_strip_reserved(data))),
        )
        if not rows:
            raise AlreadyExists(collection, doc_id)
        return doc_id

    async def _raise_for_missed_write(self, collection, doc_id, expected_version, paths=()):
        actual = await self._current_version(collection, doc_id)
        if actual is None:
            raise NotFound(collection, doc_id)
        if expected_version is not None and actual != expected_version:
            raise VersionConflict(collection, doc_id, expected_version, actual)
        raise PersistenceFailure(f"{collection}/{doc_id} has no field at one of {sorted(paths)}")

    async def update(self, collection, doc_id, fields, expected_version=None):
        expr = sql.SQL("data")
        params: list[Any] = []
        guards = []
        guard_params: list[Any] = []
        for path, value in fields.items():
            parts = split_path(path)
            expr = sql.SQL("jsonb_set({}, %s::text[], %s, true)").format(expr)
            params.extend([parts, Jsonb(value)])
            if len(parts) > 1:
                # jsonb_set silently ignores a missing parent and appends past
                # the end of an array; the parent must be an object or the
                # element must already exist.
                guards.append(sql.SQL(
                    "(jsonb_typeof(data #> %s::text[]) = 'object' OR data #> %s::text[] IS NOT NULL)"
                ))
                guard_params.extend([parts[:-1], parts])

        query = sql.SQL(
            "UPDATE documents SET data = {}, version = version + 1 "
            "WHERE collection = %s AND id = %s"
        ).format(expr)
        params.extend([collection, doc_id])
        for guard in guards:
            query += sql.SQL(" AND ") + guard
        params.extend(guard_params)
        if expected_version is not None:
            query += sql.SQL(" AND version = %s")
            params.append(expected_version)
        query += sql.SQL(" RETURNING version")

        rows = await self._fetch(query, params)
        if not rows:
            await self._raise_for_missed_write(collection, doc_id, expected_version, fields.keys())
        return rows[0][0]

    async def set(self, collection, doc_id, data, expected_version=None):
        body = Jsonb(_strip_reserved(data))
        if expected_version is None:
            rows = await self._fetch(
                "INSERT INTO documents (collection, id, data, version) VALUES (%s, %s, %s, 1) "
                "ON CONFLICT (collection, id) DO UPDATE "
                "SET data = EXCLUDED.data, version = documents.version + 1 "
                "RETURNING version",
                (collection, doc_id, body),
            )
            return rows[0][0]

        rows = await self._fetch(
            "UPDATE documents SET data = %s, version = version + 1 "
            "WHERE collection = %s AND id = %s AND version = %s RETURNING version",
            (body, collection, doc_id, expected_version),
        )
        if not rows:
            actual = await self._current_version(collection, doc_id)
            raise VersionConflict(collection, doc_id, expected_version, actual)
        return rows[0][0]

    async def delete(self, collection, doc_id):
        rows = await self._fetch(
            "DELETE FROM documents WHERE collection = %s AND id = %s RETURNING id",
            (collection, doc_id),
        )
        return bool(rows)


def create_store(backend: str, database_url: str = "", pool_size: int = 10) -> DocumentStore:
    """Build the configured backend (not yet connected)."""
    if backend == "postgres":
        return PostgresDocumentStore(database_url, max_size=pool_size)
    return MemoryDocumentStore()
