"""
Tests for runtime wiring and the scheduler cog.
"""

import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import GUILD_ID, ROLE_ID, FakeClock, FakeExecutor
from rolekeeper.cog.scheduler_cog import RoleSchedulerCog, setup
from rolekeeper.configuration.app_configuration import AppConfig
from rolekeeper.database.db_connection import ConnectionState
from rolekeeper.runtime import Runtime


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    config_path = tmp_path / "app_config.yml"
    config_path.write_text(
        f"database:\n  path: {tmp_path / 'runtime.db'}\n"
        "scheduler:\n  poll_interval_seconds: 3600\n  max_removal_attempts: 2\n",
        encoding="utf-8",
    )
    return AppConfig(config_path)


@pytest.mark.asyncio
async def test_runtime_builds_working_components(config):
    executor = FakeExecutor()
    runtime = Runtime.build(config, executor, clock=FakeClock())
    await runtime.open()
    try:
        assert runtime.connection.state is ConnectionState.CONNECTED
        assert runtime.temporary_roles.max_removal_attempts == 2

        outcome = await runtime.service.grant_temporary_role(
            GUILD_ID, [1], ROLE_ID, datetime.timedelta(minutes=5)
        )
        assert outcome.success is True
        assert set(await runtime.temporary_roles.get_by_guild(GUILD_ID)) == {1}
        assert "temporary_roles.insert_one" in runtime.perf_mon.get_statistics()
    finally:
        await runtime.shutdown()

    assert runtime.connection.state is ConnectionState.DISCONNECTED
    assert runtime.scheduler.running is False


@pytest.mark.asyncio
async def test_cog_starts_scheduler_once():
    runtime = MagicMock()
    runtime.scheduler.running = False
    bot = MagicMock()
    bot.guilds = []
    cog = RoleSchedulerCog(bot, runtime)

    await cog.on_ready()
    runtime.scheduler.start.assert_called_once()

    runtime.scheduler.running = True
    await cog.on_ready()
    runtime.scheduler.start.assert_called_once()


def test_cog_unload_stops_scheduler():
    runtime = MagicMock()
    cog = RoleSchedulerCog(MagicMock(), runtime)

    cog.cog_unload()

    runtime.scheduler.stop.assert_called_once()


def test_setup_registers_cog():
    bot = MagicMock()
    runtime = MagicMock()

    setup(bot, runtime)

    (cog,), _ = bot.add_cog.call_args
    assert isinstance(cog, RoleSchedulerCog)
    assert cog.runtime is runtime
