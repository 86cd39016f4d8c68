"""
Pytest configuration and fixtures for RoleKeeper tests.

Storage fixtures use a real aiosqlite database in a temporary directory;
Discord is replaced by :class:`FakeExecutor` or ``MagicMock`` objects.
"""

import datetime
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from rolekeeper.database.db_cache import InvalidatingCache  # noqa: E402
from rolekeeper.database.db_connection import ConnectionManager  # noqa: E402
from rolekeeper.database.db_perf_mon import DatabasePerformanceMonitor  # noqa: E402
from rolekeeper.database.store import StoreAdapter  # noqa: E402
from rolekeeper.repositories.recurring_schedule_repo import RecurringScheduleRepository  # noqa: E402
from rolekeeper.repositories.scheduled_role_repo import ScheduledRoleRepository  # noqa: E402
from rolekeeper.repositories.temporary_role_repo import TemporaryRoleRepository  # noqa: E402

NOW = datetime.datetime(2026, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)
GUILD_ID = 1000
ROLE_ID = 2000
MAX_REMOVAL_ATTEMPTS = 3


class FakeClock:
    """Callable clock whose time tests move by hand."""

    def __init__(self, now: datetime.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


class FakeExecutor:
    """Records every mutation; users in ``fail_users`` fail, roles in ``raise_roles`` raise.

    ``report_raises`` makes completion reports blow up.
    """

    def __init__(self, fail_users=(), raise_roles=(), report_raises=False) -> None:
        self.calls = []
        self.notified = []
        self.reports = []
        self.report_raises = report_raises
        self.fail_users = set(fail_users)
        self.raise_roles = set(raise_roles)

    async def mutate(self, guild_id, user_id, role_id, direction, *, reason=""):
        self.calls.append((guild_id, user_id, role_id, direction))
        if role_id in self.raise_roles:
            raise RuntimeError(f"executor blew up for role {role_id}")
        return user_id not in self.fail_users

    async def notify_expiry(self, guild_id, user_id, role_id):
        self.notified.append((guild_id, user_id, role_id))
        return True

    async def report_completion(self, guild_id, role_id, summary, *, reason="", recurring=False):
        self.reports.append((guild_id, role_id, summary, reason, recurring))
        if self.report_raises:
            raise RuntimeError("report channel exploded")
        return True


async def execute_sql(connection: ConnectionManager, sql: str, params=()) -> None:
    """Write a row directly, bypassing repositories (used to fake legacy data)."""
    async with connection.transaction() as conn:
        await conn.execute(sql, params)


@pytest_asyncio.fixture
async def connection(tmp_path):
    manager = ConnectionManager(tmp_path / "test.db", max_reconnect_attempts=0, reconnect_delay=0)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def perf_mon():
    return DatabasePerformanceMonitor()


@pytest.fixture
def store(connection, perf_mon):
    return StoreAdapter(connection, perf_mon, timeout=5.0)


@pytest.fixture
def temporary_roles(store):
    return TemporaryRoleRepository(
        store, InvalidatingCache("temporary_roles"), max_removal_attempts=MAX_REMOVAL_ATTEMPTS
    )


@pytest.fixture
def scheduled_roles(store):
    return ScheduledRoleRepository(store, InvalidatingCache("scheduled_roles"))


@pytest.fixture
def recurring_schedules(store):
    return RecurringScheduleRepository(store, InvalidatingCache("recurring_schedules"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor():
    return FakeExecutor()
