"""
Persistent storage for recurring role schedules.

The interval is stored twice: ``interval_spec`` keeps the user's intent
(``daily``, ``custom`` 90 minutes, ...) and ``interval_seconds`` lets the due
filter run in SQL as ``last_executed_at + interval_seconds <= now``.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional

from rolekeeper.database.db_cache import InvalidatingCache
from rolekeeper.database.db_schema import RECURRING_SCHEDULES
from rolekeeper.database.errors import StoreError
from rolekeeper.database.normalization import stamp, utcnow
from rolekeeper.database.store import Document, StoreAdapter
from rolekeeper.datatypes.role_datatypes import IntervalSpec, RecurringSchedule, RolePayload
from rolekeeper.util.logger import get_logger

_CACHE_ALL = "recurring_schedules_all"
_ACTIVE = "active = 1 AND cancelled = 0"
_DUE_CLAUSE = (
    f"{_ACTIVE} AND (last_executed_at IS NULL "
    "OR typeof(last_executed_at) = 'text' "
    "OR last_executed_at + interval_seconds <= ?)"
)


class RecurringScheduleRepository:
    """CRUD and active-schedule queries for ``recurring_schedules``."""

    def __init__(
        self,
        store: StoreAdapter,
        cache: InvalidatingCache,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._collection = store.collection(RECURRING_SCHEDULES)
        self._cache = cache
        self._logger = logger or get_logger("recurring_schedule_repo")

    async def get_all(self) -> Dict[str, RecurringSchedule]:
        cached = self._cache.get(_CACHE_ALL)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find()
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to load recurring schedules: %s", exc)
            return {}

        result = {schedule.id: schedule for schedule in self._to_schedules(documents)}
        self._cache.set(_CACHE_ALL, result)
        return result

    async def get_by_guild(self, guild_id: int) -> List[RecurringSchedule]:
        cache_key = f"recurring_schedules_guild_{guild_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            documents = await self._collection.find("guild_id = ?", (int(guild_id),), order_by="created_at")
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to load recurring schedules for guild %s: %s", guild_id, exc)
            return []

        result = self._to_schedules(documents)
        self._cache.set(cache_key, result)
        return result

    async def get_by_id(self, schedule_id: str, *, use_cache: bool = True) -> Optional[RecurringSchedule]:
        cache_key = f"recurring_schedule_{schedule_id}"
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            document = await self._collection.find_one("id = ?", (str(schedule_id),))
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to load recurring schedule %s: %s", schedule_id, exc)
            return None

        schedule = self._to_schedule(document) if document else None
        if use_cache:
            self._cache.set(cache_key, schedule)
        return schedule

    async def find_active(self, now: Optional[datetime.datetime] = None) -> List[RecurringSchedule]:
        """
        Active, non-cancelled schedules. With ``now`` only those whose next
        fire time has been reached are returned. Never cached.
        """
        try:
            if now is None:
                documents = await self._collection.find(_ACTIVE)
            else:
                documents = await self._collection.find(_DUE_CLAUSE, (int(now.timestamp()),))
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to query active recurring schedules: %s", exc)
            return []

        schedules = self._to_schedules(documents)
        if now is None:
            return schedules
        return [schedule for schedule in schedules if schedule.is_due(now)]

    async def create(self, data: Dict[str, Any]) -> bool:
        """
        Store a new active schedule.

        ``data`` needs ``id``, ``guild_id``, ``interval`` (an
        :class:`IntervalSpec` or its dict form) and ``payload``.
        """
        try:
            interval = self._interval(data["interval"])
            payload = data["payload"]
            if not isinstance(payload, RolePayload):
                payload = RolePayload.from_dict(payload)
            document = stamp(
                {
                    "id": str(data["id"]),
                    "guild_id": int(data["guild_id"]),
                    "active": True,
                    "cancelled": False,
                    "interval_spec": interval.to_dict(),
                    "interval_seconds": interval.seconds,
                    "last_executed_at": data.get("last_executed_at"),
                    "payload": payload.to_dict(),
                },
                created=True,
            )
            await self._collection.insert_one(document)
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("[RECURRING] Invalid recurring schedule data %r: %s", data, exc)
            return False
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to create recurring schedule %s: %s", data.get("id"), exc)
            return False

        self._cache.clear()
        return True

    async def update(self, schedule_id: str, fields: Dict[str, Any]) -> bool:
        """Apply a partial update; an ``interval`` key rewrites both interval columns."""
        changes = dict(fields)
        changes.pop("id", None)

        try:
            if "interval" in changes:
                interval = self._interval(changes.pop("interval"))
                changes["interval_spec"] = interval.to_dict()
                changes["interval_seconds"] = interval.seconds
            if "payload" in changes:
                payload = changes["payload"]
                if not isinstance(payload, RolePayload):
                    payload = RolePayload.from_dict(payload)
                changes["payload"] = payload.to_dict()
            modified = await self._collection.update_one(str(schedule_id), stamp(changes))
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("[RECURRING] Invalid update for recurring schedule %s: %s", schedule_id, exc)
            return False
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to update recurring schedule %s: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def update_last_executed(self, schedule_id: str, at: Optional[datetime.datetime] = None) -> bool:
        moment = at or utcnow()
        try:
            modified = await self._collection.update_one(
                str(schedule_id), stamp({"last_executed_at": moment}, now=moment)
            )
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to record execution of %s: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def cancel(self, schedule_id: str, at: Optional[datetime.datetime] = None) -> bool:
        """Deactivate a schedule for good; False if the id is unknown."""
        moment = at or utcnow()
        try:
            modified = await self._collection.update_one(
                str(schedule_id),
                stamp({"active": False, "cancelled": True, "cancelled_at": moment}, now=moment),
            )
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to cancel recurring schedule %s: %s", schedule_id, exc)
            return False

        self._cache.clear()
        return modified > 0

    async def delete(self, schedule_id: str) -> bool:
        try:
            removed = await self._collection.delete_one(str(schedule_id))
        except StoreError as exc:
            self._logger.error("[RECURRING] Failed to delete recurring schedule %s: %s", schedule_id, exc)
            return False

        if removed:
            self._cache.clear()
        return True

    def _to_schedules(self, documents: List[Document]) -> List[RecurringSchedule]:
        schedules = []
        for document in documents:
            schedule = self._to_schedule(document)
            if schedule is not None:
                schedules.append(schedule)
        return schedules

    def _to_schedule(self, document: Document) -> Optional[RecurringSchedule]:
        try:
            spec = document.get("interval_spec")
            if spec:
                interval = IntervalSpec.from_dict(spec)
            else:
                interval = IntervalSpec(kind="custom", minutes=int(document["interval_seconds"]) // 60)
            payload = RolePayload.from_dict(document.get("payload") or {})
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.warning("[RECURRING] Skipping %s with malformed data: %s", document.get("id"), exc)
            return None

        return RecurringSchedule(
            id=str(document["id"]),
            guild_id=int(document["guild_id"]),
            interval=interval,
            payload=payload,
            active=bool(document.get("active")),
            cancelled=bool(document.get("cancelled")),
            last_executed_at=document.get("last_executed_at"),
            cancelled_at=document.get("cancelled_at"),
        )

    @staticmethod
    def _interval(value: Any) -> IntervalSpec:
        interval = value if isinstance(value, IntervalSpec) else IntervalSpec.from_dict(value)
        if interval.minutes <= 0:
            raise ValueError(f"interval must be positive, got {interval.minutes} minute(s)")
        return interval
