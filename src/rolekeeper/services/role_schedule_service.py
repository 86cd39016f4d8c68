"""
RoleScheduleService: what command handlers call to manage timed roles.

Responsibilities:
- Validate durations, instants and intervals before anything is stored
- Apply the immediate role change for temporary grants, and roll it back if
  the grant cannot be persisted
- Create, cancel and list scheduled and recurring role actions per guild
- Grant and remove supporter roles, which have no expiry

The service never does SQL itself and never raises on store or Discord
failures; it returns ``False`` / ``None`` and the caller shows an error.
"""

from __future__ import annotations

import datetime
import secrets
from typing import Callable, Dict, List, Optional, Sequence, Union

from rolekeeper.database.normalization import to_instant, utcnow
from rolekeeper.datatypes.role_datatypes import (
    GrantOutcome,
    IntervalSpec,
    RecurringSchedule,
    RoleDirection,
    RolePayload,
    ScheduledRoleAction,
    SupporterRole,
    TemporaryRoleEntry,
    parse_duration,
)
from rolekeeper.repositories.recurring_schedule_repo import RecurringScheduleRepository
from rolekeeper.repositories.scheduled_role_repo import ScheduledRoleRepository
from rolekeeper.repositories.temporary_role_repo import TemporaryRoleRepository
from rolekeeper.roles.role_executor import RoleExecutor
from rolekeeper.util.logger import get_logger

logger = get_logger("role_schedule_service")

GRANT_REASON = "Temporary role granted"
ROLLBACK_REASON = "Role grant could not be stored"
REVOKE_REASON = "Temporary role revoked"
SUPPORTER_GRANT_REASON = "Supporter role granted"
SUPPORTER_REVOKE_REASON = "Supporter role removed"


def new_schedule_id() -> str:
    """Short random id shown to users for cancelling schedules."""
    return secrets.token_hex(4)


class RoleScheduleService:
    """Validates and applies temporary, scheduled and recurring role commands."""

    def __init__(
        self,
        temporary_roles: TemporaryRoleRepository,
        scheduled_roles: ScheduledRoleRepository,
        recurring_schedules: RecurringScheduleRepository,
        executor: RoleExecutor,
        *,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._temporary_roles = temporary_roles
        self._scheduled_roles = scheduled_roles
        self._recurring_schedules = recurring_schedules
        self._executor = executor
        self._clock = clock

    # ------------------------------------------------------------------
    # Temporary roles
    # ------------------------------------------------------------------

    async def grant_temporary_role(
        self,
        guild_id: int,
        user_ids: Sequence[int],
        role_id: int,
        duration: Union[datetime.timedelta, str],
        notify_expiry: bool = False,
    ) -> GrantOutcome:
        """
        Give ``role_id`` to every user now and remember to take it back
        after ``duration`` (a ``timedelta`` or text such as ``"12h"``).

        Only users that actually received the role are stored. If the grant
        cannot be stored, the role is removed again from those users.
        """
        outcome = GrantOutcome()
        if isinstance(duration, str):
            parsed = parse_duration(duration)
            if parsed is None:
                logger.warning("[ROLE SERVICE] Rejected unreadable duration %r for role %s", duration, role_id)
                return outcome
            duration = parsed
        if duration <= datetime.timedelta(0):
            logger.warning("[ROLE SERVICE] Rejected non-positive duration %s for role %s", duration, role_id)
            return outcome

        targets = list(dict.fromkeys(int(uid) for uid in user_ids))
        if not targets:
            return outcome

        outcome.expires_at = self._clock() + duration
        for user_id in targets:
            granted = await self._executor.mutate(
                guild_id, user_id, role_id, RoleDirection.GRANT, reason=GRANT_REASON
            )
            (outcome.granted if granted else outcome.failed).append(user_id)

        if not outcome.granted:
            logger.warning("[ROLE SERVICE] Could not grant role %s to any user in guild %s", role_id, guild_id)
            return outcome

        if len(outcome.granted) == 1:
            outcome.stored = await self._temporary_roles.add(
                guild_id, outcome.granted[0], role_id, outcome.expires_at, notify_expiry
            )
        else:
            outcome.stored = await self._temporary_roles.add_multiple(
                guild_id, outcome.granted, role_id, outcome.expires_at, notify_expiry
            )

        if not outcome.stored:
            logger.error(
                "[ROLE SERVICE] Failed to store temporary role %s in guild %s, rolling back %d grant(s)",
                role_id, guild_id, len(outcome.granted),
            )
            for user_id in outcome.granted:
                await self._executor.mutate(
                    guild_id, user_id, role_id, RoleDirection.REVOKE, reason=ROLLBACK_REASON
                )
            return outcome

        logger.info(
            "[ROLE SERVICE] Granted role %s to %d user(s) in guild %s until %s",
            role_id, len(outcome.granted), guild_id, outcome.expires_at.isoformat(),
        )
        return outcome

    async def revoke_temporary_role(self, guild_id: int, user_id: int, role_id: int) -> bool:
        """Take a temporary role away early and forget the grant."""
        revoked = await self._executor.mutate(
            guild_id, user_id, role_id, RoleDirection.REVOKE, reason=REVOKE_REASON
        )
        if not revoked:
            return False
        return await self._temporary_roles.delete(guild_id, user_id, role_id)

    async def list_temporary_roles(self, guild_id: int) -> Dict[int, Dict[int, TemporaryRoleEntry]]:
        return await self._temporary_roles.get_by_guild(guild_id)

    # ------------------------------------------------------------------
    # Supporter roles
    # ------------------------------------------------------------------

    async def grant_supporter_role(self, guild_id: int, user_id: int, role_id: int, reason: str = "") -> bool:
        """Give a supporter role with no expiry; rolled back if it cannot be recorded."""
        granted = await self._executor.mutate(
            guild_id, user_id, role_id, RoleDirection.GRANT, reason=reason or SUPPORTER_GRANT_REASON
        )
        if not granted:
            return False

        if not await self._temporary_roles.add_supporter(guild_id, user_id, role_id, self._clock(), reason):
            logger.error("[ROLE SERVICE] Failed to record supporter %s in guild %s, rolling back", user_id, guild_id)
            await self._executor.mutate(guild_id, user_id, role_id, RoleDirection.REVOKE, reason=ROLLBACK_REASON)
            return False

        logger.info("[ROLE SERVICE] Granted supporter role %s to %s in guild %s", role_id, user_id, guild_id)
        return True

    async def revoke_supporter_role(self, guild_id: int, user_id: int) -> bool:
        """Remove every supporter role a member holds and forget them."""
        held = [s for s in await self._temporary_roles.get_supporters(guild_id) if s.user_id == int(user_id)]
        if not held:
            return False

        for supporter in held:
            revoked = await self._executor.mutate(
                guild_id, user_id, supporter.role_id, RoleDirection.REVOKE, reason=SUPPORTER_REVOKE_REASON
            )
            if not revoked:
                logger.warning(
                    "[ROLE SERVICE] Could not remove supporter role %s from %s in guild %s",
                    supporter.role_id, user_id, guild_id,
                )
                return False
        return await self._temporary_roles.remove_supporter(guild_id, user_id)

    async def list_supporters(self, guild_id: int) -> List[SupporterRole]:
        return await self._temporary_roles.get_supporters(guild_id)

    # ------------------------------------------------------------------
    # One-shot schedules
    # ------------------------------------------------------------------

    async def schedule_role_action(
        self,
        guild_id: int,
        payload: RolePayload,
        scheduled_at: Union[datetime.datetime, str, int, float],
    ) -> Optional[str]:
        """Store a one-shot action; returns its id, or ``None`` if rejected or not stored."""
        instant = to_instant(scheduled_at)
        if instant is None or instant <= self._clock():
            logger.warning("[ROLE SERVICE] Rejected schedule time %r (must be in the future)", scheduled_at)
            return None
        if not payload.user_ids:
            logger.warning("[ROLE SERVICE] Rejected schedule for role %s without users", payload.role_id)
            return None

        schedule_id = new_schedule_id()
        created = await self._scheduled_roles.create(
            {"id": schedule_id, "guild_id": guild_id, "scheduled_at": instant, "payload": payload}
        )
        if not created:
            return None

        logger.info(
            "[ROLE SERVICE] Scheduled %s of role %s in guild %s at %s (id=%s)",
            payload.action, payload.role_id, guild_id, instant.isoformat(), schedule_id,
        )
        return schedule_id

    async def cancel_scheduled_action(self, guild_id: int, schedule_id: str) -> bool:
        """Cancel a pending action; actions of other guilds are never touched."""
        action = await self._scheduled_roles.get_by_id(schedule_id, use_cache=False)
        if action is None or action.guild_id != int(guild_id):
            return False
        return await self._scheduled_roles.cancel(schedule_id, self._clock())

    async def list_scheduled_actions(
        self, guild_id: int, *, include_completed: bool = False
    ) -> List[ScheduledRoleAction]:
        actions = await self._scheduled_roles.get_by_guild(guild_id)
        if include_completed:
            return list(actions)
        return [action for action in actions if not action.executed and not action.cancelled]

    # ------------------------------------------------------------------
    # Recurring schedules
    # ------------------------------------------------------------------

    async def create_recurring_schedule(
        self,
        guild_id: int,
        payload: RolePayload,
        interval: Union[IntervalSpec, str],
    ) -> Optional[str]:
        """Store a recurring schedule that fires right away and then every ``interval``."""
        spec = IntervalSpec.parse(interval) if isinstance(interval, str) else interval
        if spec is None:
            logger.warning("[ROLE SERVICE] Rejected recurring interval %r", interval)
            return None
        if not payload.user_ids:
            logger.warning("[ROLE SERVICE] Rejected recurring schedule for role %s without users", payload.role_id)
            return None

        schedule_id = new_schedule_id()
        created = await self._recurring_schedules.create(
            {"id": schedule_id, "guild_id": guild_id, "interval": spec, "payload": payload}
        )
        if not created:
            return None

        logger.info(
            "[ROLE SERVICE] Created recurring %s of role %s in guild %s every %d minute(s) (id=%s)",
            payload.action, payload.role_id, guild_id, spec.minutes, schedule_id,
        )
        return schedule_id

    async def cancel_recurring_schedule(self, guild_id: int, schedule_id: str) -> bool:
        schedule = await self._recurring_schedules.get_by_id(schedule_id, use_cache=False)
        if schedule is None or schedule.guild_id != int(guild_id) or schedule.cancelled:
            return False
        return await self._recurring_schedules.cancel(schedule_id, self._clock())

    async def list_recurring_schedules(
        self, guild_id: int, *, include_cancelled: bool = False
    ) -> List[RecurringSchedule]:
        schedules = await self._recurring_schedules.get_by_guild(guild_id)
        if include_cancelled:
            return list(schedules)
        return [schedule for schedule in schedules if schedule.active and not schedule.cancelled]
