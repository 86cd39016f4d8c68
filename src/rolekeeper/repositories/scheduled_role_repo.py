"""
Persistent storage for one-shot scheduled role actions.

An action is pending until it is either executed or cancelled; both
transitions are conditional updates, so a cancel that races the scheduler
can never flip an action that already ran (and vice versa).
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional

from rolekeeper.database.db_cache import InvalidatingCache
from rolekeeper.database.db_schema import SCHEDULED_ROLES
from rolekeeper.database.errors import StoreError
from rolekeeper.database.normalization import stamp, to_instant, utcnow
from rolekeeper.database.store import Document, StoreAdapter
from rolekeeper.datatypes.role_datatypes import ExecutionStatus, RolePayload, ScheduledRoleAction
from rolekeeper.util.logger import get_logger

_CACHE_ALL = "scheduled_roles_all"
_PENDING = "executed = 0 AND cancelled = 0"
_DUE_CLAUSE = (
    f"{_PENDING} AND ((typeof(scheduled_at) IN ('integer', 'real') AND scheduled_at <= ?) "
    "OR typeof(scheduled_at) = 'text')"
)


class ScheduledRoleRepository:
    """CRUD, due query and state transitions for ``scheduled_roles``."""

    def __init__(
        self,
        store: StoreAdapter,
        cache: InvalidatingCache,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._collection = store.collection(SCHEDULED_ROLES)
        self._cache = cache
        self._logger = logger or get_logger("scheduled_role_repo")

    async def get_all(self) -> Dict[str, ScheduledRoleAction]:
        cached = self._cache.get(_CACHE_ALL)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find()
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to load scheduled roles: %s", exc)
            return {}

        result = {action.id: action for action in self._to_actions(documents)}
        self._cache.set(_CACHE_ALL, result)
        return result

    async def get_by_guild(self, guild_id: int) -> List[ScheduledRoleAction]:
        cache_key = f"scheduled_roles_guild_{guild_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find("guild_id = ?", (int(guild_id),), order_by="scheduled_at")
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to load scheduled roles for guild %s: %s", guild_id, exc)
            return []

        result = self._to_actions(documents)
        self._cache.set(cache_key, result)
        return result

    async def get_by_id(self, schedule_id: str, *, use_cache: bool = True) -> Optional[ScheduledRoleAction]:
        """
        Look up one action.

        The scheduler passes ``use_cache=False`` to re-read an action right
        before executing it.
        """
        cache_key = f"scheduled_role_{schedule_id}"
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            document = await self._collection.find_one("id = ?", (str(schedule_id),))
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to load scheduled role %s: %s", schedule_id, exc)
            return None

        action = self._to_action(document) if document else None
        if use_cache:
            self._cache.set(cache_key, action)
        return action

    async def find_due(self, now: Optional[datetime.datetime] = None) -> List[ScheduledRoleAction]:
        """Pending actions whose scheduled time has passed. Never cached."""
        moment = now or utcnow()
        try:
            documents = await self._collection.find(
                _DUE_CLAUSE, (int(moment.timestamp()),), order_by="scheduled_at"
            )
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to query due scheduled roles: %s", exc)
            return []

        return [action for action in self._to_actions(documents) if action.is_due(moment)]

    async def create(self, data: Dict[str, Any]) -> bool:
        """
        Store a new pending action.

        ``data`` needs ``id``, ``guild_id``, ``scheduled_at`` and ``payload``
        (a :class:`RolePayload` or its dict form).
        """
        scheduled_at = to_instant(data.get("scheduled_at"))
        if scheduled_at is None:
            self._logger.error("[SCHEDULED ROLES] Refusing to store action without a valid time: %r", data)
            return False

        try:
            payload = data["payload"]
            if not isinstance(payload, RolePayload):
                payload = RolePayload.from_dict(payload)
            document = stamp(
                {
                    "id": str(data["id"]),
                    "guild_id": int(data["guild_id"]),
                    "scheduled_at": scheduled_at,
                    "payload": payload.to_dict(),
                    "executed": False,
                    "cancelled": False,
                },
                created=True,
            )
            await self._collection.insert_one(document)
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("[SCHEDULED ROLES] Invalid scheduled role data %r: %s", data, exc)
            return False
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to create scheduled role %s: %s", data.get("id"), exc)
            return False

        self._cache.clear()
        return True

    async def update(self, schedule_id: str, fields: Dict[str, Any]) -> bool:
        """Apply a partial update; returns False if nothing matched."""
        changes = dict(fields)
        changes.pop("id", None)

        try:
            if "payload" in changes:
                payload = changes["payload"]
                if not isinstance(payload, RolePayload):
                    payload = RolePayload.from_dict(payload)
                changes["payload"] = payload.to_dict()
            modified = await self._collection.update_one(str(schedule_id), stamp(changes))
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("[SCHEDULED ROLES] Invalid update for scheduled role %s: %s", schedule_id, exc)
            return False
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to update scheduled role %s: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def mark_executed(
        self,
        schedule_id: str,
        at: Optional[datetime.datetime] = None,
        *,
        status: ExecutionStatus = ExecutionStatus.COMPLETED,
        result: Optional[str] = None,
    ) -> bool:
        """
        Pending → executed, recording how the run went.

        Returns True only if this call made the transition.
        """
        moment = at or utcnow()
        try:
            modified = await self._collection.update_one(
                str(schedule_id),
                stamp(
                    {"executed": True, "executed_at": moment, "status": status.value, "result": result},
                    now=moment,
                ),
                where=_PENDING,
            )
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to mark %s executed: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def cancel(self, schedule_id: str, at: Optional[datetime.datetime] = None) -> bool:
        """Pending → cancelled. Returns True only if this call made the transition."""
        moment = at or utcnow()
        try:
            modified = await self._collection.update_one(
                str(schedule_id),
                stamp({"cancelled": True, "cancelled_at": moment}, now=moment),
                where=_PENDING,
            )
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to cancel %s: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def delete(self, schedule_id: str) -> bool:
        """Remove an action; deleting an absent id succeeds."""
        try:
            removed = await self._collection.delete_one(str(schedule_id))
        except StoreError as exc:
            self._logger.error("[SCHEDULED ROLES] Failed to delete scheduled role %s: %s", schedule_id, exc)
            return False

        if removed:
            self._cache.clear()
        return True

    def _to_actions(self, documents: List[Document]) -> List[ScheduledRoleAction]:
        actions = []
        for document in documents:
            action = self._to_action(document)
            if action is not None:
                actions.append(action)
        return actions

    def _to_action(self, document: Document) -> Optional[ScheduledRoleAction]:
        if document.get("scheduled_at") is None:
            self._logger.warning("[SCHEDULED ROLES] Skipping %s with unreadable time", document.get("id"))
            return None
        try:
            payload = RolePayload.from_dict(document.get("payload") or {})
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.warning("[SCHEDULED ROLES] Skipping %s with malformed payload: %s", document.get("id"), exc)
            return None

        try:
            status = ExecutionStatus(document["status"]) if document.get("status") else None
        except ValueError:
            self._logger.warning("[SCHEDULED ROLES] Unknown status %r on %s", document.get("status"), document.get("id"))
            status = None

        return ScheduledRoleAction(
            id=str(document["id"]),
            guild_id=int(document["guild_id"]),
            scheduled_at=document["scheduled_at"],
            payload=payload,
            executed=bool(document.get("executed")),
            cancelled=bool(document.get("cancelled")),
            executed_at=document.get("executed_at"),
            cancelled_at=document.get("cancelled_at"),
            status=status,
            result=document.get("result"),
        )
