"""
Database connection management: one long-lived session per process.

Design
------
SQLite performs best with a **single long-lived connection** rather than
opening/closing a connection per operation; WAL mode lets one writer and any
number of readers proceed safely.

Lifecycle
---------
``DISCONNECTED`` → ``CONNECTING`` → ``CONNECTED`` ⇄ ``DISCONNECTED``

* :meth:`ConnectionManager.connect` retries a failed open after a fixed delay,
  up to ``max_reconnect_attempts`` retries, then raises
  :class:`DatabaseUnavailableError`.
* :meth:`ConnectionManager.is_healthy` pings with ``SELECT 1`` and never raises.
* :meth:`ConnectionManager.reconnect` runs one bounded connect cycle in the
  background so a poll tick never waits on it.

Usage
-----
    await connection.connect()

    async with connection.read() as conn:
        cursor = await conn.execute("SELECT ...")

    async with connection.transaction() as conn:
        await conn.execute("UPDATE ...")
        # commits on clean exit, rolls back on exception

    await connection.close()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from rolekeeper.database.db_schema import SchemaManager
from rolekeeper.database.errors import DatabaseUnavailableError
from rolekeeper.util.logger import get_logger

logger = get_logger("database_connection")

# ── Pragmas applied once when the connection is opened ──────────────────────
_PRAGMAS = [
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",    # safe with WAL; faster than FULL
    "PRAGMA cache_size = -65536",     # 64 MB page cache
    "PRAGMA temp_store = MEMORY",
    "PRAGMA busy_timeout = 5000",
]


class ConnectionState(Enum):
    """Lifecycle of the process-wide session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

    def __str__(self) -> str:
        return self.value


class ConnectionManager:
    """
    Owner of the single aiosqlite connection.

    All repositories go through the store adapter, which goes through this
    object; nothing else opens a connection.

    Task safety
    -----------
    * Reads: ``async with read()``; WAL allows concurrent reads.
    * Writes: ``async with transaction()``; serialised by ``_write_sem``.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 2.0,
        ping_timeout: float = 5.0,
    ) -> None:
        self._path = Path(path)
        self._max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._ping_timeout = ping_timeout

        self._conn: aiosqlite.Connection | None = None
        self._write_sem = asyncio.Semaphore(1)   # one writer at a time
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the session, retrying after a fixed delay on failure.

        The first attempt is followed by at most ``max_reconnect_attempts``
        retries. Returns immediately if the session is already live.

        Raises:
            DatabaseUnavailableError: Every attempt failed.
        """
        async with self._connect_lock:
            if self._conn is not None and self.state is ConnectionState.CONNECTED:
                return

            self.attempts = 0
            while True:
                self.state = ConnectionState.CONNECTING
                try:
                    await self._open()
                except Exception as exc:
                    self.state = ConnectionState.DISCONNECTED
                    logger.error("[DB CONNECTION] Failed to open %s: %s", self._path, exc)

                    if self.attempts >= self._max_reconnect_attempts:
                        logger.critical(
                            "[DB CONNECTION] Max reconnection attempts (%d) reached; store unavailable",
                            self._max_reconnect_attempts,
                        )
                        raise DatabaseUnavailableError(
                            f"could not open {self._path} after {self.attempts + 1} attempts"
                        ) from exc

                    self.attempts += 1
                    logger.info(
                        "[DB CONNECTION] Reconnection attempt %d/%d in %.1fs",
                        self.attempts, self._max_reconnect_attempts, self._reconnect_delay,
                    )
                    await asyncio.sleep(self._reconnect_delay)
                    continue

                self.state = ConnectionState.CONNECTED
                self.attempts = 0
                logger.info("[DB CONNECTION] Connected to %s", self._path)
                return

    async def _open(self) -> None:
        await self._discard_connection()

        self._path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self._path)
        try:
            conn.row_factory = aiosqlite.Row  # rows are dict-like
            for pragma in _PRAGMAS:
                await conn.execute(pragma)
            await conn.commit()
            await SchemaManager.initialize_schema(conn)
        except Exception:
            await conn.close()
            raise

        self._conn = conn

    async def _discard_connection(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await conn.close()
        except Exception as exc:
            logger.debug("[DB CONNECTION] Ignoring error while discarding stale connection: %s", exc)

    def reconnect(self) -> None:
        """Start a background connect cycle unless one is already running."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self.state = ConnectionState.DISCONNECTED
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect(), name="rolekeeper-db-reconnect")

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except DatabaseUnavailableError as exc:
            logger.critical("[DB CONNECTION] Reconnect cycle exhausted: %s", exc)

    async def is_healthy(self) -> bool:
        """Round-trip ``SELECT 1``; False (never an exception) on any failure."""
        if self._conn is None:
            return False
        try:
            await asyncio.wait_for(self._ping(self._conn), timeout=self._ping_timeout)
        except Exception as exc:
            if self.state is ConnectionState.CONNECTED:
                logger.warning("[DB CONNECTION] Health check failed: %s", exc)
            self.state = ConnectionState.DISCONNECTED
            return False

        if self.state is not ConnectionState.CONNECTED:
            logger.info("[DB CONNECTION] Connection restored")
            self.state = ConnectionState.CONNECTED
        return True

    @staticmethod
    async def _ping(conn: aiosqlite.Connection) -> None:
        async with conn.execute("SELECT 1") as cursor:
            await cursor.fetchone()

    async def close(self) -> None:
        """Flush the WAL and close the connection."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        if self._conn is None:
            self.state = ConnectionState.DISCONNECTED
            return

        try:
            await self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            await self._conn.commit()
        except Exception:
            logger.exception("[DB CONNECTION] WAL checkpoint failed during close")
        finally:
            await self._conn.close()
            self._conn = None
            self.state = ConnectionState.DISCONNECTED
            logger.info("[DB CONNECTION] Connection closed")

    # ------------------------------------------------------------------
    # Connection access
    # ------------------------------------------------------------------

    @property
    def connection(self) -> aiosqlite.Connection:
        """
        The live aiosqlite connection.

        Raises:
            DatabaseUnavailableError: No session, or the last health check failed.
        """
        if self._conn is None or self.state is not ConnectionState.CONNECTED:
            raise DatabaseUnavailableError(f"database connection is {self.state}")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialised write transaction.

        Commits on clean exit and rolls back if the body raises (including
        cancellation by a timeout).
        """
        async with self._write_sem:
            conn = self.connection
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read access; symmetrical with :meth:`transaction`, no semaphore."""
        yield self.connection
