"""
Collection-style access to the SQLite store.

A :class:`Collection` wraps one table described by a
:class:`~rolekeeper.database.db_schema.CollectionSchema` and offers
``find`` / ``insert_one`` / ``update_one`` / ``delete_one`` /
``delete_where``. Writes are encoded through the schema (instants to unix
seconds, JSON columns dumped, booleans to 0/1); reads are decoded the same way
in reverse, with legacy instants upgraded by
:func:`~rolekeeper.database.normalization.to_instant`.

Every call runs under the store timeout and is timed by the performance
monitor. Failures surface as :class:`~rolekeeper.database.errors.StoreError`
subclasses; repositories decide what safe default to return.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import aiosqlite

from rolekeeper.database.db_connection import ConnectionManager
from rolekeeper.database.db_perf_mon import DatabasePerformanceMonitor
from rolekeeper.database.db_schema import CollectionSchema
from rolekeeper.database.errors import StoreError, StoreTimeoutError
from rolekeeper.database.normalization import to_bool, to_instant, to_unix
from rolekeeper.util.logger import get_logger

logger = get_logger("store")

T = TypeVar("T")
Document = Dict[str, Any]


class StoreAdapter:
    """Runs store operations with a timeout, timing and error translation."""

    def __init__(
        self,
        connection: ConnectionManager,
        perf_mon: DatabasePerformanceMonitor,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._connection = connection
        self._perf_mon = perf_mon
        self._timeout = timeout

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    def collection(self, schema: CollectionSchema) -> "Collection":
        return Collection(self, schema)

    async def read(self, operation: str, fn: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self._connection.read() as conn:
                return await fn(conn)
        return await self._execute(operation, run)

    async def write(self, operation: str, fn: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self._connection.transaction() as conn:
                return await fn(conn)
        return await self._execute(operation, run)

    async def _execute(self, operation: str, run: Callable[[], Awaitable[T]]) -> T:
        start = time.perf_counter()
        ok = False
        try:
            result = await asyncio.wait_for(run(), timeout=self._timeout)
            ok = True
            return result
        except asyncio.TimeoutError as exc:
            raise StoreTimeoutError(f"{operation} timed out after {self._timeout:.1f}s") from exc
        except StoreError:
            raise
        except (aiosqlite.Error, ValueError, TypeError) as exc:
            raise StoreError(f"{operation} failed: {exc}") from exc
        finally:
            self._perf_mon.track(operation, time.perf_counter() - start, ok=ok)


class Collection:
    """One table, accessed with document-shaped dicts."""

    def __init__(self, store: StoreAdapter, schema: CollectionSchema) -> None:
        self._store = store
        self.schema = schema

    @property
    def name(self) -> str:
        return self.schema.name

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def find(
        self,
        where: str = "",
        params: Sequence[Any] = (),
        *,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        return await self._store.read(
            f"{self.name}.find", lambda conn: self._find(conn, where, params, order_by)
        )

    async def find_one(self, where: str, params: Sequence[Any] = ()) -> Optional[Document]:
        rows = await self._store.read(
            f"{self.name}.find_one", lambda conn: self._find(conn, where, params, None, limit=1)
        )
        return rows[0] if rows else None

    async def insert_one(
        self,
        document: Document,
        *,
        upsert_on: Optional[Sequence[str]] = None,
    ) -> Optional[int]:
        """Insert a document and return its rowid (``upsert_on`` turns it into an upsert)."""
        return await self._store.write(
            f"{self.name}.insert_one", lambda conn: self._insert(conn, document, upsert_on)
        )

    async def update_one(
        self,
        key_value: Any,
        fields: Document,
        *,
        where: str = "",
        params: Sequence[Any] = (),
    ) -> int:
        """Update the row whose key equals ``key_value`` (and ``where``); returns rows modified."""
        clause, clause_params = self._key_clause(key_value, where, params)
        return await self._store.write(
            f"{self.name}.update_one", lambda conn: self._update(conn, fields, clause, clause_params)
        )

    async def delete_one(self, key_value: Any) -> int:
        clause, clause_params = self._key_clause(key_value, "", ())
        return await self._store.write(
            f"{self.name}.delete_one", lambda conn: self._delete(conn, clause, clause_params)
        )

    async def delete_where(self, where: str, params: Sequence[Any]) -> int:
        return await self._store.write(
            f"{self.name}.delete_where", lambda conn: self._delete(conn, where, params)
        )

    async def transact(self, operation: str, fn: Callable[["BoundCollection"], Awaitable[T]]) -> T:
        """Run several reads/writes inside one serialised transaction."""
        return await self._store.write(
            f"{self.name}.{operation}", lambda conn: fn(BoundCollection(self, conn))
        )

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, document: Document) -> Document:
        encoded: Document = {}
        for field_name, value in document.items():
            if field_name not in self.schema.columns:
                logger.debug("[STORE] Dropping unknown field %s for %s", field_name, self.name)
                continue
            if field_name in self.schema.time_fields:
                value = to_unix(value)
            elif field_name in self.schema.json_fields and value is not None:
                value = json.dumps(value)
            elif field_name in self.schema.bool_fields:
                value = int(to_bool(value))
            encoded[field_name] = value
        return encoded

    def decode(self, row: aiosqlite.Row) -> Document:
        document: Document = dict(row)
        for field_name in self.schema.time_fields.intersection(document):
            document[field_name] = to_instant(document[field_name])
        for field_name in self.schema.bool_fields.intersection(document):
            document[field_name] = to_bool(document[field_name])
        for field_name in self.schema.json_fields.intersection(document):
            raw = document[field_name]
            if isinstance(raw, str):
                try:
                    document[field_name] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(
                        "[STORE] Invalid JSON in %s.%s (key=%s)",
                        self.name, field_name, document.get(self.schema.key),
                    )
                    document[field_name] = None
        return document

    # ------------------------------------------------------------------
    # SQL builders (run on an already acquired connection)
    # ------------------------------------------------------------------

    def _key_clause(self, key_value: Any, where: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
        clause = f"{self.schema.key} = ?"
        if where:
            clause = f"{clause} AND ({where})"
        return clause, [key_value, *params]

    async def _find(
        self,
        conn: aiosqlite.Connection,
        where: str,
        params: Sequence[Any],
        order_by: Optional[str],
        limit: Optional[int] = None,
    ) -> List[Document]:
        sql = f"SELECT {', '.join(self.schema.columns)} FROM {self.name}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        async with conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [self.decode(row) for row in rows]

    async def _insert(
        self,
        conn: aiosqlite.Connection,
        document: Document,
        upsert_on: Optional[Sequence[str]],
    ) -> Optional[int]:
        encoded = self.encode(document)
        columns = list(encoded)
        sql = (
            f"INSERT INTO {self.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        if upsert_on:
            updates = [c for c in columns if c not in upsert_on and c != "created_at"]
            assignments = ", ".join(f"{c} = excluded.{c}" for c in updates)
            sql += f" ON CONFLICT({', '.join(upsert_on)}) DO UPDATE SET {assignments}"
        cursor = await conn.execute(sql, tuple(encoded.values()))
        try:
            return cursor.lastrowid
        finally:
            await cursor.close()

    async def _update(
        self,
        conn: aiosqlite.Connection,
        fields: Document,
        where: str,
        params: Iterable[Any],
    ) -> int:
        encoded = self.encode(fields)
        if not encoded:
            return 0
        assignments = ", ".join(f"{c} = ?" for c in encoded)
        sql = f"UPDATE {self.name} SET {assignments} WHERE {where}"
        cursor = await conn.execute(sql, (*encoded.values(), *params))
        try:
            return cursor.rowcount
        finally:
            await cursor.close()

    async def _delete(self, conn: aiosqlite.Connection, where: str, params: Iterable[Any]) -> int:
        cursor = await conn.execute(f"DELETE FROM {self.name} WHERE {where}", tuple(params))
        try:
            return cursor.rowcount
        finally:
            await cursor.close()


class BoundCollection:
    """A :class:`Collection` pinned to the connection of an open transaction."""

    def __init__(self, collection: Collection, conn: aiosqlite.Connection) -> None:
        self._collection = collection
        self._conn = conn

    async def find(self, where: str = "", params: Sequence[Any] = ()) -> List[Document]:
        return await self._collection._find(self._conn, where, params, None)

    async def update_one(self, key_value: Any, fields: Document) -> int:
        clause, clause_params = self._collection._key_clause(key_value, "", ())
        return await self._collection._update(self._conn, fields, clause, clause_params)

    async def delete_one(self, key_value: Any) -> int:
        clause, clause_params = self._collection._key_clause(key_value, "", ())
        return await self._collection._delete(self._conn, clause, clause_params)

    async def delete_where(self, where: str, params: Sequence[Any]) -> int:
        return await self._collection._delete(self._conn, where, params)
