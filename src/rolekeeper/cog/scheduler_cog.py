"""Background scheduler cog for RoleKeeper.

Starts the lifecycle scheduler once the gateway connection is ready and
stops it when the cog is unloaded. State lives in SQLite, so a restart
simply resumes with the next tick.
"""

from __future__ import annotations

import discord
from discord.ext import commands

from rolekeeper.runtime import Runtime
from rolekeeper.util.logger import get_logger

logger = get_logger("scheduler_cog")


class RoleSchedulerCog(commands.Cog):
    """
    Hosts the :class:`~rolekeeper.scheduler.lifecycle_scheduler.LifecycleScheduler`.

    ``on_ready`` can fire again after a gateway reconnect; the scheduler is
    only started the first time.

    Access via:
        bot.cogs["RoleSchedulerCog"]
    """

    def __init__(self, bot: discord.Bot, runtime: Runtime) -> None:
        self.bot = bot
        self.runtime = runtime

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        scheduler = self.runtime.scheduler
        if not scheduler.running:
            scheduler.start()
            logger.info("[ROLE_SCHEDULER] Ready in %d guild(s)", len(self.bot.guilds))

    def cog_unload(self) -> None:
        self.runtime.scheduler.stop()
        logger.info("[ROLE_SCHEDULER] Stopped")


def setup(bot: discord.Bot, runtime: Runtime) -> None:
    bot.add_cog(RoleSchedulerCog(bot, runtime))
