"""
Table definitions for the role collections.

Every collection has an explicit :class:`CollectionSchema` describing which
columns exist and how they are encoded (instants, JSON documents, booleans).
The store adapter uses the schema to encode writes and decode reads, so no
repository ever sees a raw legacy value.

Instants are INTEGER unix seconds. The columns are declared INTEGER, which
means a non-numeric legacy value (ISO text written by an older release) keeps
its TEXT storage class; the due queries account for that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

import aiosqlite

from rolekeeper.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 2


@dataclass(frozen=True)
class CollectionSchema:
    """Column layout and encoding rules for one table."""

    name: str
    key: str
    columns: Tuple[str, ...]
    time_fields: FrozenSet[str] = field(default_factory=frozenset)
    json_fields: FrozenSet[str] = field(default_factory=frozenset)
    bool_fields: FrozenSet[str] = field(default_factory=frozenset)


TEMPORARY_ROLES = CollectionSchema(
    name="temporary_roles",
    key="id",
    columns=(
        "id", "guild_id", "user_id", "user_ids", "role_id", "expires_at",
        "notify_expiry", "failed_attempts", "created_at", "updated_at",
    ),
    time_fields=frozenset({"expires_at", "created_at", "updated_at"}),
    json_fields=frozenset({"user_ids"}),
    bool_fields=frozenset({"notify_expiry"}),
)

SCHEDULED_ROLES = CollectionSchema(
    name="scheduled_roles",
    key="id",
    columns=(
        "id", "guild_id", "scheduled_at", "executed", "cancelled", "payload",
        "executed_at", "cancelled_at", "status", "result", "created_at", "updated_at",
    ),
    time_fields=frozenset({"scheduled_at", "executed_at", "cancelled_at", "created_at", "updated_at"}),
    json_fields=frozenset({"payload"}),
    bool_fields=frozenset({"executed", "cancelled"}),
)

RECURRING_SCHEDULES = CollectionSchema(
    name="recurring_schedules",
    key="id",
    columns=(
        "id", "guild_id", "active", "cancelled", "interval_spec", "interval_seconds",
        "last_executed_at", "payload", "cancelled_at", "created_at", "updated_at",
    ),
    time_fields=frozenset({"last_executed_at", "cancelled_at", "created_at", "updated_at"}),
    json_fields=frozenset({"interval_spec", "payload"}),
    bool_fields=frozenset({"active", "cancelled"}),
)

SUPPORTER_ROLES = CollectionSchema(
    name="supporter_roles",
    key="id",
    columns=("id", "guild_id", "user_id", "role_id", "reason", "assigned_at", "created_at", "updated_at"),
    time_fields=frozenset({"assigned_at", "created_at", "updated_at"}),
)

ALL_COLLECTIONS = (TEMPORARY_ROLES, SCHEDULED_ROLES, RECURRING_SCHEDULES, SUPPORTER_ROLES)

# Columns added after version 1; existing databases get them on connect.
_ADDED_COLUMNS = (
    ("scheduled_roles", "status", "TEXT"),
    ("scheduled_roles", "result", "TEXT"),
)


class SchemaManager:
    """Creates tables and indexes; safe to run on every connect."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        """
        Create or update all tables and indexes.

        Args:
            db: Open database connection
        """
        await SchemaManager._create_tables(db)
        await SchemaManager._create_indexes(db)
        await SchemaManager._update_schema_version(db)
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized (version %d)", SCHEMA_VERSION)

    @staticmethod
    async def _create_tables(db: aiosqlite.Connection) -> None:
        # user_id is only set by single-user grants; fan-out grants use user_ids
        await db.execute("""
            CREATE TABLE IF NOT EXISTS temporary_roles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id INTEGER NOT NULL,
                user_id INTEGER,
                user_ids TEXT,
                role_id INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                notify_expiry INTEGER NOT NULL DEFAULT 0,
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS scheduled_roles (
                id TEXT PRIMARY KEY,
                guild_id INTEGER NOT NULL,
                scheduled_at INTEGER NOT NULL,
                executed INTEGER NOT NULL DEFAULT 0,
                cancelled INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                executed_at INTEGER,
                cancelled_at INTEGER,
                status TEXT,
                result TEXT,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS recurring_schedules (
                id TEXT PRIMARY KEY,
                guild_id INTEGER NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                cancelled INTEGER NOT NULL DEFAULT 0,
                interval_spec TEXT NOT NULL,
                interval_seconds INTEGER NOT NULL,
                last_executed_at INTEGER,
                payload TEXT NOT NULL,
                cancelled_at INTEGER,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS supporter_roles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                role_id INTEGER NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                assigned_at INTEGER NOT NULL,
                created_at INTEGER,
                updated_at INTEGER,
                UNIQUE (guild_id, user_id, role_id)
            )
        """)

        for table, column, declaration in _ADDED_COLUMNS:
            try:
                await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")
                logger.info("[SCHEMA] Added %s column to %s", column, table)
            except aiosqlite.OperationalError:
                pass  # Column already exists

        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    @staticmethod
    async def _create_indexes(db: aiosqlite.Connection) -> None:
        await db.execute("CREATE INDEX IF NOT EXISTS idx_temporary_roles_expires ON temporary_roles(expires_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_temporary_roles_guild_role ON temporary_roles(guild_id, role_id)")
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_temporary_roles_single "
            "ON temporary_roles(guild_id, user_id, role_id)"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_roles_due ON scheduled_roles(executed, cancelled, scheduled_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_roles_guild ON scheduled_roles(guild_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_recurring_schedules_active ON recurring_schedules(active, cancelled)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_recurring_schedules_guild ON recurring_schedules(guild_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_supporter_roles_guild ON supporter_roles(guild_id)")

    @staticmethod
    async def _update_schema_version(db: aiosqlite.Connection) -> None:
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
