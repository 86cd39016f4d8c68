"""
Persistent storage for temporary role grants.

A grant row either names one user (``user_id``, written by :meth:`add` and
by releases that predate fan-out grants) or a JSON array of users sharing the
same role and expiry (``user_ids``, written by :meth:`add_multiple`).
Revocation identity is (guild, role) plus membership of the user in the row.

Supporter roles live in their own table next to the grants: they are held
until removed by hand and are never picked up by the expiry scheduler.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence

from rolekeeper.database.db_cache import InvalidatingCache
from rolekeeper.database.db_schema import SUPPORTER_ROLES, TEMPORARY_ROLES
from rolekeeper.database.errors import StoreError
from rolekeeper.database.normalization import stamp, to_id_list, to_instant, utcnow
from rolekeeper.database.store import BoundCollection, Document, StoreAdapter
from rolekeeper.datatypes.role_datatypes import SupporterRole, TemporaryRoleEntry, TemporaryRoleGrant
from rolekeeper.util.logger import get_logger

_CACHE_ALL = "temporary_roles_all"

# Rows whose expires_at is still ISO text are returned too and decided after
# normalization; SQLite orders every TEXT value above every INTEGER.
_DUE_CLAUSE = (
    "((typeof(expires_at) IN ('integer', 'real') AND expires_at <= ?) "
    "OR typeof(expires_at) = 'text') AND failed_attempts < ?"
)

GuildTemporaryRoles = Dict[int, Dict[int, TemporaryRoleEntry]]


class TemporaryRoleRepository:
    """CRUD and due queries for the ``temporary_roles`` table."""

    def __init__(
        self,
        store: StoreAdapter,
        cache: InvalidatingCache,
        *,
        max_removal_attempts: int = 10,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._collection = store.collection(TEMPORARY_ROLES)
        self._supporters = store.collection(SUPPORTER_ROLES)
        self._cache = cache
        self._max_removal_attempts = max_removal_attempts
        self._logger = logger or get_logger("temporary_role_repo")

    @property
    def max_removal_attempts(self) -> int:
        return self._max_removal_attempts

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_all(self) -> Dict[int, GuildTemporaryRoles]:
        """Return ``{guild_id: {user_id: {role_id: entry}}}`` with one entry per user."""
        cached = self._cache.get(_CACHE_ALL)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find()
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to load temporary roles: %s", exc)
            return {}

        result: Dict[int, GuildTemporaryRoles] = {}
        for grant in self._to_grants(documents):
            guild_roles = result.setdefault(grant.guild_id, {})
            for user_id, entry in self._entries(grant):
                guild_roles.setdefault(user_id, {})[grant.role_id] = entry

        self._cache.set(_CACHE_ALL, result)
        return result

    async def get_by_guild(self, guild_id: int) -> GuildTemporaryRoles:
        """Return ``{user_id: {role_id: entry}}`` for one guild."""
        cache_key = f"temporary_roles_guild_{guild_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find("guild_id = ?", (int(guild_id),))
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to load temporary roles for guild %s: %s", guild_id, exc)
            return {}

        result: GuildTemporaryRoles = {}
        for grant in self._to_grants(documents):
            for user_id, entry in self._entries(grant):
                result.setdefault(user_id, {})[grant.role_id] = entry

        self._cache.set(cache_key, result)
        return result

    async def get_for_user(self, guild_id: int, user_id: int) -> Dict[int, TemporaryRoleEntry]:
        """Return ``{role_id: entry}`` for one member."""
        guild_roles = await self.get_by_guild(guild_id)
        return dict(guild_roles.get(int(user_id), {}))

    async def find_due(self, now: Optional[datetime.datetime] = None) -> List[TemporaryRoleGrant]:
        """
        Grants whose expiry has passed and that have not exhausted their
        removal attempts. Read straight from the store, never cached.
        """
        moment = now or utcnow()
        try:
            documents = await self._collection.find(
                _DUE_CLAUSE,
                (int(moment.timestamp()), self._max_removal_attempts),
            )
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to query expired temporary roles: %s", exc)
            return []

        return [grant for grant in self._to_grants(documents) if grant.is_due(moment)]

    async def find_stalled(self) -> List[TemporaryRoleGrant]:
        """Grants that hit the removal attempt limit and need manual attention."""
        try:
            documents = await self._collection.find(
                "failed_attempts >= ?", (self._max_removal_attempts,)
            )
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to query stalled temporary roles: %s", exc)
            return []
        return self._to_grants(documents)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, data: Dict[str, Any]) -> bool:
        """
        Insert one grant row.

        ``data`` needs ``guild_id``, ``role_id``, ``expires_at`` (any
        date-like value) and either ``user_ids`` or ``user_id``.
        """
        expires_at = to_instant(data.get("expires_at"))
        if expires_at is None:
            self._logger.error("[TEMP ROLES] Refusing to store grant without a valid expiry: %r", data)
            return False

        try:
            document: Document = {
                "guild_id": int(data["guild_id"]),
                "role_id": int(data["role_id"]),
                "expires_at": expires_at,
                "notify_expiry": bool(data.get("notify_expiry", False)),
                "failed_attempts": 0,
            }
            if data.get("user_ids") is not None:
                document["user_ids"] = list(dict.fromkeys(to_id_list(data["user_ids"])))
            else:
                document["user_id"] = int(data["user_id"])
                document["user_ids"] = [document["user_id"]]
            if not document["user_ids"]:
                raise ValueError("grant has no users")
            await self._collection.insert_one(stamp(document, created=True))
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("[TEMP ROLES] Invalid temporary role data %r: %s", data, exc)
            return False
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to create temporary role: %s", exc)
            return False

        self._cache.clear()
        return True

    async def add(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        expires_at: Any,
        notify_expiry: bool = False,
    ) -> bool:
        """Insert or refresh the single-user grant for (guild, user, role)."""
        instant = to_instant(expires_at)
        if instant is None:
            self._logger.error("[TEMP ROLES] Invalid expiry %r for user %s", expires_at, user_id)
            return False

        try:
            document = stamp(
                {
                    "guild_id": int(guild_id),
                    "user_id": int(user_id),
                    "user_ids": [int(user_id)],
                    "role_id": int(role_id),
                    "expires_at": instant,
                    "notify_expiry": bool(notify_expiry),
                    "failed_attempts": 0,
                },
                created=True,
            )
            await self._collection.insert_one(document, upsert_on=("guild_id", "user_id", "role_id"))
        except (TypeError, ValueError) as exc:
            self._logger.error("[TEMP ROLES] Invalid temporary role for user %r: %s", user_id, exc)
            return False
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to add temporary role for user %s: %s", user_id, exc)
            return False

        self._cache.clear()
        return True

    async def add_multiple(
        self,
        guild_id: int,
        user_ids: Sequence[int],
        role_id: int,
        expires_at: Any,
        notify_expiry: bool = False,
    ) -> bool:
        """Store one fan-out row for several users sharing role and expiry."""
        if not user_ids:
            return False
        return await self.create(
            {
                "guild_id": guild_id,
                "user_ids": list(user_ids),
                "role_id": role_id,
                "expires_at": expires_at,
                "notify_expiry": notify_expiry,
            }
        )

    async def delete(self, guild_id: int, user_id: int, role_id: int) -> bool:
        """
        Revoke one user's grant of ``role_id``.

        Single-user rows are deleted; the user is removed from fan-out rows,
        and rows left empty are deleted. Deleting an absent grant succeeds.
        """
        gid, uid, rid = int(guild_id), int(user_id), int(role_id)

        async def remove_user(tx: BoundCollection) -> int:
            removed = await tx.delete_where("guild_id = ? AND role_id = ? AND user_id = ?", (gid, rid, uid))
            shared_rows = await tx.find("guild_id = ? AND role_id = ? AND user_id IS NULL", (gid, rid))
            for row in shared_rows:
                members = to_id_list(row.get("user_ids"))
                if uid not in members:
                    continue
                remaining = [member for member in members if member != uid]
                if remaining:
                    await tx.update_one(row["id"], stamp({"user_ids": remaining}))
                else:
                    await tx.delete_one(row["id"])
                removed += 1
            return removed

        try:
            removed = await self._collection.transact("remove_user", remove_user)
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to delete temporary role %s for user %s: %s", rid, uid, exc)
            return False

        if removed:
            self._cache.clear()
        return True

    async def delete_grant(self, grant_id: int) -> bool:
        """Delete a whole grant row; an absent row is a no-op success."""
        try:
            removed = await self._collection.delete_one(int(grant_id))
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to delete grant %s: %s", grant_id, exc)
            return False

        if removed:
            self._cache.clear()
        return True

    async def remove_users(self, grant_id: int, user_ids: Sequence[int]) -> bool:
        """Drop the given users from a grant, deleting the row if nobody is left."""
        done = {int(uid) for uid in user_ids}
        if not done:
            return True

        async def shrink(tx: BoundCollection) -> int:
            rows = await tx.find("id = ?", (int(grant_id),))
            if not rows:
                return 0
            row = rows[0]
            members = to_id_list(row.get("user_ids")) or ([row["user_id"]] if row.get("user_id") is not None else [])
            remaining = [member for member in members if member not in done]
            if remaining and len(remaining) == len(members):
                return 0
            if remaining:
                return await tx.update_one(row["id"], stamp({"user_ids": remaining}))
            return await tx.delete_one(row["id"])

        try:
            changed = await self._collection.transact("remove_users", shrink)
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to remove users from grant %s: %s", grant_id, exc)
            return False

        if changed:
            self._cache.clear()
        return True

    async def record_failure(self, grant_id: int) -> Optional[int]:
        """Increment the failed removal counter; returns the new count or None."""

        async def increment(tx: BoundCollection) -> Optional[int]:
            rows = await tx.find("id = ?", (int(grant_id),))
            if not rows:
                return None
            attempts = int(rows[0].get("failed_attempts") or 0) + 1
            await tx.update_one(rows[0]["id"], stamp({"failed_attempts": attempts}))
            return attempts

        try:
            attempts = await self._collection.transact("record_failure", increment)
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to record removal failure for grant %s: %s", grant_id, exc)
            return None

        if attempts is not None:
            self._cache.clear()
        return attempts

    # ------------------------------------------------------------------
    # Supporter roles
    # ------------------------------------------------------------------

    async def add_supporter(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        assigned_at: Any = None,
        reason: str = "",
    ) -> bool:
        """Record (or refresh) a supporter role, which never expires on its own."""
        instant = to_instant(assigned_at) if assigned_at is not None else utcnow()
        if instant is None:
            self._logger.error("[TEMP ROLES] Invalid supporter assignment time %r", assigned_at)
            return False

        try:
            document = stamp(
                {
                    "guild_id": int(guild_id),
                    "user_id": int(user_id),
                    "role_id": int(role_id),
                    "reason": str(reason or ""),
                    "assigned_at": instant,
                },
                created=True,
            )
            await self._supporters.insert_one(document, upsert_on=("guild_id", "user_id", "role_id"))
        except (TypeError, ValueError) as exc:
            self._logger.error("[TEMP ROLES] Invalid supporter role for user %r: %s", user_id, exc)
            return False
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to add supporter role for user %s: %s", user_id, exc)
            return False

        self._cache.clear()
        return True

    async def remove_supporter(self, guild_id: int, user_id: int) -> bool:
        """Forget every supporter role of a member. True if anything was removed."""
        try:
            removed = await self._supporters.delete_where(
                "guild_id = ? AND user_id = ?", (int(guild_id), int(user_id))
            )
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to remove supporter %s: %s", user_id, exc)
            return False

        if removed:
            self._cache.clear()
        return removed > 0

    async def get_supporters(self, guild_id: int) -> List[SupporterRole]:
        cache_key = f"supporter_roles_guild_{guild_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            documents = await self._supporters.find("guild_id = ?", (int(guild_id),), order_by="assigned_at")
        except StoreError as exc:
            self._logger.error("[TEMP ROLES] Failed to load supporters for guild %s: %s", guild_id, exc)
            return []

        result = [
            SupporterRole(
                guild_id=int(document["guild_id"]),
                user_id=int(document["user_id"]),
                role_id=int(document["role_id"]),
                assigned_at=document["assigned_at"],
                reason=document.get("reason") or "",
            )
            for document in documents
            if document.get("assigned_at") is not None
        ]
        self._cache.set(cache_key, result)
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _to_grants(self, documents: List[Document]) -> List[TemporaryRoleGrant]:
        grants = []
        for document in documents:
            grant = self._to_grant(document)
            if grant is not None:
                grants.append(grant)
        return grants

    def _to_grant(self, document: Document) -> Optional[TemporaryRoleGrant]:
        if document.get("expires_at") is None:
            self._logger.warning("[TEMP ROLES] Skipping grant %s with unreadable expiry", document.get("id"))
            return None

        single_user = document.get("user_id") is not None
        try:
            if document.get("user_ids") is not None:
                user_ids = tuple(to_id_list(document["user_ids"]))
            else:
                user_ids = (int(document["user_id"]),) if single_user else ()
        except (TypeError, ValueError) as exc:
            self._logger.warning("[TEMP ROLES] Skipping grant %s with malformed users: %s", document.get("id"), exc)
            return None

        return TemporaryRoleGrant(
            id=int(document["id"]),
            guild_id=int(document["guild_id"]),
            user_ids=user_ids,
            role_id=int(document["role_id"]),
            expires_at=document["expires_at"],
            notify_expiry=bool(document.get("notify_expiry")),
            failed_attempts=int(document.get("failed_attempts") or 0),
            single_user=single_user,
        )

    @staticmethod
    def _entries(grant: TemporaryRoleGrant):
        for user_id in grant.user_ids:
            yield user_id, TemporaryRoleEntry(
                grant_id=grant.id,
                guild_id=grant.guild_id,
                user_id=user_id,
                role_id=grant.role_id,
                expires_at=grant.expires_at,
                notify_expiry=grant.notify_expiry,
            )
