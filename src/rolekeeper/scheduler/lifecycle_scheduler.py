"""
Periodic driver for every time-based role change.

Each tick checks store health, collects due temporary grants, due one-shot
actions and due recurring schedules, hands every item to the role executor
and writes the completion state back. An executor that fails or raises for
one user only fails that user: one-shot and recurring work is still marked
complete, so nothing is retried forever. Items are processed one by one in
store order; a failure in one item is logged and never stops the others.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass
from typing import Callable, Optional

from rolekeeper.database.db_connection import ConnectionManager
from rolekeeper.database.normalization import utcnow
from rolekeeper.datatypes.role_datatypes import (
    ExecutionSummary,
    RecurringSchedule,
    RoleDirection,
    RolePayload,
    ScheduledRoleAction,
    TemporaryRoleGrant,
)
from rolekeeper.repositories.recurring_schedule_repo import RecurringScheduleRepository
from rolekeeper.repositories.scheduled_role_repo import ScheduledRoleRepository
from rolekeeper.repositories.temporary_role_repo import TemporaryRoleRepository
from rolekeeper.roles.role_executor import RoleExecutor
from rolekeeper.util.logger import get_logger

logger = get_logger("lifecycle_scheduler")

EXPIRY_REASON = "Temporary role expired"


@dataclass(slots=True)
class TickReport:
    """What one tick did. ``failed`` counts items with at least one failed mutation."""

    skipped: bool = False
    temporary_processed: int = 0
    temporary_failed: int = 0
    scheduled_processed: int = 0
    scheduled_failed: int = 0
    recurring_processed: int = 0
    recurring_failed: int = 0

    @property
    def processed(self) -> int:
        return self.temporary_processed + self.scheduled_processed + self.recurring_processed

    @property
    def failed(self) -> int:
        return self.temporary_failed + self.scheduled_failed + self.recurring_failed


class LifecycleScheduler:
    """
    Polls the repositories every ``poll_interval`` seconds.

    Args:
        connection: Used for the per-tick health check and reconnects.
        temporary_roles / scheduled_roles / recurring_schedules: Repositories.
        executor: Applies role changes.
        poll_interval: Seconds between ticks.
        report_completions: Post a summary to the guild log channel after
            each one-shot or recurring run.
        clock: Returns the current aware UTC instant; replaced in tests.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        temporary_roles: TemporaryRoleRepository,
        scheduled_roles: ScheduledRoleRepository,
        recurring_schedules: RecurringScheduleRepository,
        executor: RoleExecutor,
        *,
        poll_interval: float = 30.0,
        report_completions: bool = True,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._connection = connection
        self.temporary_roles = temporary_roles
        self.scheduled_roles = scheduled_roles
        self.recurring_schedules = recurring_schedules
        self.executor = executor
        self._poll_interval = poll_interval
        self._report_completions = report_completions
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the polling task if it is not already running."""
        if self.running:
            logger.warning("[SCHEDULER] Already running")
            return
        logger.info("[SCHEDULER] Starting (poll interval=%.1fs)", self._poll_interval)
        self._task = asyncio.create_task(self._run_loop(), name="rolekeeper-lifecycle-scheduler")

    def stop(self) -> None:
        """Request cancellation without waiting (for synchronous callers such as ``cog_unload``)."""
        if self._task and not self._task.done():
            self._task.cancel()

    async def shutdown(self) -> None:
        """Cancel the polling task and wait for it; safe to call more than once."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("[SCHEDULER] Shutdown complete")

    async def _run_loop(self) -> None:
        try:
            while True:
                try:
                    report = await self.tick()
                    if report.processed or report.failed:
                        logger.info(
                            "[SCHEDULER] Tick done: %d processed, %d failed",
                            report.processed, report.failed,
                        )
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("[SCHEDULER] Unexpected error during tick")
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            logger.info("[SCHEDULER] Polling cancelled")
            raise

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Run one pass over all due work. An overlapping call returns a skipped report."""
        if self._tick_lock.locked():
            logger.debug("[SCHEDULER] Previous tick still running, skipping")
            return TickReport(skipped=True)

        async with self._tick_lock:
            if not await self._connection.is_healthy():
                logger.warning("[SCHEDULER] Store unavailable, skipping tick and reconnecting")
                self._connection.reconnect()
                return TickReport(skipped=True)

            now = self._clock()
            report = TickReport()
            await self._process_temporary_roles(now, report)
            await self._process_scheduled_actions(now, report)
            await self._process_recurring_schedules(now, report)
            return report

    async def _process_temporary_roles(self, now: datetime.datetime, report: TickReport) -> None:
        for grant in await self.temporary_roles.find_due(now):
            try:
                done = await self._expire_grant(grant)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[SCHEDULER] Failed to expire temporary role grant %s", grant.id)
                done = False
            if done:
                report.temporary_processed += 1
            else:
                report.temporary_failed += 1

    async def _process_scheduled_actions(self, now: datetime.datetime, report: TickReport) -> None:
        for action in await self.scheduled_roles.find_due(now):
            try:
                outcome = await self._execute_scheduled(action, now)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[SCHEDULER] Failed to execute scheduled role action %s", action.id)
                outcome = False
            if outcome is None:
                continue
            if outcome:
                report.scheduled_processed += 1
            else:
                report.scheduled_failed += 1

    async def _process_recurring_schedules(self, now: datetime.datetime, report: TickReport) -> None:
        for schedule in await self.recurring_schedules.find_active(now):
            try:
                outcome = await self._execute_recurring(schedule, now)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[SCHEDULER] Failed to execute recurring schedule %s", schedule.id)
                outcome = False
            if outcome is None:
                continue
            if outcome:
                report.recurring_processed += 1
            else:
                report.recurring_failed += 1

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def _expire_grant(self, grant: TemporaryRoleGrant) -> bool:
        """Revoke an expired grant from all its users. True if the grant is gone."""
        succeeded = []
        for user_id in grant.user_ids:
            revoked = await self._mutate(grant.guild_id, user_id, grant.role_id, RoleDirection.REVOKE, EXPIRY_REASON)
            if not revoked:
                continue
            succeeded.append(user_id)
            if grant.notify_expiry:
                await self._notify_expiry(grant.guild_id, user_id, grant.role_id)

        if len(succeeded) == len(grant.user_ids):
            deleted = await self.temporary_roles.delete_grant(grant.id)
            if deleted:
                logger.info(
                    "[SCHEDULER] Removed expired role %s from %d user(s) in guild %s",
                    grant.role_id, len(succeeded), grant.guild_id,
                )
            return deleted

        if succeeded and not grant.single_user:
            await self.temporary_roles.remove_users(grant.id, succeeded)

        attempts = await self.temporary_roles.record_failure(grant.id)
        failed = len(grant.user_ids) - len(succeeded)
        if attempts is not None and attempts >= self.temporary_roles.max_removal_attempts:
            logger.critical(
                "[SCHEDULER] Giving up on expired role %s in guild %s after %d attempts (%d user(s) still hold it)",
                grant.role_id, grant.guild_id, attempts, failed,
            )
        else:
            logger.warning(
                "[SCHEDULER] Could not remove expired role %s from %d user(s) in guild %s, will retry",
                grant.role_id, failed, grant.guild_id,
            )
        return False

    async def _execute_scheduled(self, action: ScheduledRoleAction, now: datetime.datetime) -> Optional[bool]:
        """Run a one-shot action. ``None`` means it was cancelled or completed meanwhile."""
        current = await self.scheduled_roles.get_by_id(action.id, use_cache=False)
        if current is None or not current.is_due(now):
            logger.info("[SCHEDULER] Scheduled role action %s is no longer pending, skipping", action.id)
            return None

        summary = await self._apply_payload(current.guild_id, current.payload)
        marked = await self.scheduled_roles.mark_executed(
            current.id, self._clock(), status=summary.status, result=summary.describe()
        )
        if not marked:
            logger.warning("[SCHEDULER] Scheduled role action %s was completed concurrently", current.id)
        await self._report(current.guild_id, current.payload, summary, recurring=False)

        if summary.failed:
            logger.warning(
                "[SCHEDULER] Scheduled role action %s finished with %d failed user(s)", current.id, summary.failed
            )
            return False
        logger.info(
            "[SCHEDULER] Executed scheduled %s of role %s in guild %s",
            current.payload.action, current.payload.role_id, current.guild_id,
        )
        return True

    async def _execute_recurring(self, schedule: RecurringSchedule, now: datetime.datetime) -> Optional[bool]:
        current = await self.recurring_schedules.get_by_id(schedule.id, use_cache=False)
        if current is None or not current.is_due(now):
            logger.info("[SCHEDULER] Recurring schedule %s is no longer due, skipping", schedule.id)
            return None

        summary = await self._apply_payload(current.guild_id, current.payload)
        await self.recurring_schedules.update_last_executed(current.id, self._clock())
        await self._report(current.guild_id, current.payload, summary, recurring=True)

        if summary.failed:
            logger.warning(
                "[SCHEDULER] Recurring schedule %s finished with %d failed user(s)", current.id, summary.failed
            )
            return False
        return True

    async def _apply_payload(self, guild_id: int, payload: RolePayload) -> ExecutionSummary:
        """Apply a payload to every target user, counting successes and failures."""
        direction = payload.action.direction
        succeeded = failed = 0
        for user_id in payload.user_ids:
            if await self._mutate(guild_id, user_id, payload.role_id, direction, payload.reason):
                succeeded += 1
            else:
                failed += 1
        return ExecutionSummary(succeeded=succeeded, failed=failed)

    # ------------------------------------------------------------------
    # Executor calls (an executor error only fails its own user)
    # ------------------------------------------------------------------

    async def _mutate(
        self, guild_id: int, user_id: int, role_id: int, direction: RoleDirection, reason: str
    ) -> bool:
        try:
            return await self.executor.mutate(guild_id, user_id, role_id, direction, reason=reason)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "[SCHEDULER] Executor raised during %s of role %s for %s in guild %s",
                direction, role_id, user_id, guild_id,
            )
            return False

    async def _notify_expiry(self, guild_id: int, user_id: int, role_id: int) -> None:
        try:
            await self.executor.notify_expiry(guild_id, user_id, role_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[SCHEDULER] Expiry notice for %s in guild %s failed", user_id, guild_id)

    async def _report(
        self, guild_id: int, payload: RolePayload, summary: ExecutionSummary, *, recurring: bool
    ) -> None:
        if not self._report_completions:
            return
        try:
            await self.executor.report_completion(
                guild_id, payload.role_id, summary, reason=payload.reason, recurring=recurring
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[SCHEDULER] Completion report for guild %s failed", guild_id)
