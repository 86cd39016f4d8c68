"""
Process-wide state for RoleKeeper.

:class:`Runtime` is built once at startup from an :class:`AppConfig` and a
role executor, and is passed explicitly to everything that needs it. There
are no module-level singletons; tests build their own runtime against a
temporary database.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Callable

from rolekeeper.configuration.app_configuration import AppConfig
from rolekeeper.database.db_cache import InvalidatingCache
from rolekeeper.database.db_connection import ConnectionManager
from rolekeeper.database.db_perf_mon import DatabasePerformanceMonitor
from rolekeeper.database.db_schema import RECURRING_SCHEDULES, SCHEDULED_ROLES, TEMPORARY_ROLES
from rolekeeper.database.normalization import utcnow
from rolekeeper.database.store import StoreAdapter
from rolekeeper.repositories.recurring_schedule_repo import RecurringScheduleRepository
from rolekeeper.repositories.scheduled_role_repo import ScheduledRoleRepository
from rolekeeper.repositories.temporary_role_repo import TemporaryRoleRepository
from rolekeeper.roles.role_executor import RoleExecutor
from rolekeeper.scheduler.lifecycle_scheduler import LifecycleScheduler
from rolekeeper.services.role_schedule_service import RoleScheduleService
from rolekeeper.util.logger import get_logger

logger = get_logger("runtime")


@dataclass
class Runtime:
    config: AppConfig
    connection: ConnectionManager
    perf_mon: DatabasePerformanceMonitor
    store: StoreAdapter
    temporary_roles: TemporaryRoleRepository
    scheduled_roles: ScheduledRoleRepository
    recurring_schedules: RecurringScheduleRepository
    executor: RoleExecutor
    scheduler: LifecycleScheduler
    service: RoleScheduleService

    @classmethod
    def build(
        cls,
        config: AppConfig,
        executor: RoleExecutor,
        *,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> "Runtime":
        """Wire every component from configuration. Nothing touches the disk until :meth:`open`."""
        connection = ConnectionManager(
            config.database_path,
            max_reconnect_attempts=config.max_reconnect_attempts,
            reconnect_delay=config.reconnect_delay,
        )
        perf_mon = DatabasePerformanceMonitor(config.slow_query_threshold_ms)
        store = StoreAdapter(connection, perf_mon, timeout=config.query_timeout)

        ttl = config.cache_ttl
        temporary_roles = TemporaryRoleRepository(
            store,
            InvalidatingCache(TEMPORARY_ROLES.name, ttl),
            max_removal_attempts=config.max_removal_attempts,
        )
        scheduled_roles = ScheduledRoleRepository(store, InvalidatingCache(SCHEDULED_ROLES.name, ttl))
        recurring_schedules = RecurringScheduleRepository(store, InvalidatingCache(RECURRING_SCHEDULES.name, ttl))

        scheduler = LifecycleScheduler(
            connection,
            temporary_roles,
            scheduled_roles,
            recurring_schedules,
            executor,
            poll_interval=config.poll_interval,
            report_completions=config.report_completions,
            clock=clock,
        )
        service = RoleScheduleService(
            temporary_roles, scheduled_roles, recurring_schedules, executor, clock=clock
        )

        return cls(
            config=config,
            connection=connection,
            perf_mon=perf_mon,
            store=store,
            temporary_roles=temporary_roles,
            scheduled_roles=scheduled_roles,
            recurring_schedules=recurring_schedules,
            executor=executor,
            scheduler=scheduler,
            service=service,
        )

    async def open(self) -> None:
        """Connect the store; raises ``DatabaseUnavailableError`` once retries are exhausted."""
        await self.connection.connect()

    async def shutdown(self) -> None:
        """Stop the scheduler, then close the store. Safe to call more than once."""
        await self.scheduler.shutdown()
        await self.connection.close()
        logger.info("[RUNTIME] %s", self.perf_mon.get_summary())
        logger.info("[RUNTIME] Shutdown complete")
