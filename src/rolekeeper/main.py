"""
RoleKeeper
==========

A Discord bot that grants roles temporarily, applies role changes at a
scheduled time, and re-applies them on a recurring interval. All schedules
are stored in SQLite and survive restarts.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. ROLEKEEPER_HOME environment variable, if set.
    2. If running in a frozen/compiled context (e.g., PyInstaller, Nuitka), use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("ROLEKEEPER_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()

import asyncio
import discord
from dotenv import load_dotenv

from rolekeeper.cog import scheduler_cog
from rolekeeper.configuration.app_configuration import AppConfig
from rolekeeper.database.errors import DatabaseUnavailableError
from rolekeeper.roles.role_executor import DiscordRoleExecutor
from rolekeeper.runtime import Runtime
from rolekeeper.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load ``.env`` and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Role changes need the guilds and members intents; nothing reads message content."""
    intents = discord.Intents.default()
    intents.guilds = True
    intents.members = True
    return intents


def create_bot() -> discord.Bot:
    return discord.Bot(intents=build_intents())


async def start_bot(bot: discord.Bot, token: str) -> None:
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    finally:
        logger.info("Discord bot start routine finished.")


async def shutdown_runtime(bot: discord.Bot, runtime: Runtime) -> None:
    """Stop the scheduler and store first so no tick runs against a closed client."""
    try:
        await runtime.shutdown()
    except Exception as exc:
        logger.exception("Error during runtime shutdown: %s", exc)

    if not bot.is_closed():
        await bot.close()

    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Bootstrap configuration, store and bot, returning an exit code."""
    token = load_environment()
    config = AppConfig(BASE_DIR / "config" / "app_config.yml")

    try:
        bot = create_bot()
    except Exception as exc:
        logger.critical("Failed to initialize Discord bot: %s", exc)
        return 1

    runtime = Runtime.build(config, DiscordRoleExecutor(bot))

    try:
        logger.info("Opening database at %s…", config.database_path)
        await runtime.open()
    except DatabaseUnavailableError as exc:
        logger.critical("Failed to initialize database: %s", exc)
        await shutdown_runtime(bot, runtime)
        return 1

    scheduler_cog.setup(bot, runtime)

    exit_code = 0
    try:
        await start_bot(bot, token)
    except discord.LoginFailure as exc:
        logger.critical("Discord rejected the bot token: %s", exc)
        exit_code = 1
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        await shutdown_runtime(bot, runtime)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    sys.excepthook = handle_exception
    logger.info("Starting RoleKeeper…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except SystemExit as exit_exc:
        code = exit_exc.code
        if isinstance(code, int):
            return code
        return 1
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
