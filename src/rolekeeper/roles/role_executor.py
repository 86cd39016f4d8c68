"""
Role mutations against Discord.

The scheduler and the service only depend on :class:`RoleExecutor`: a
mutation either reached the desired end state (``True``) or did not
(``False``). Notices and completion reports are best effort and never
raise. :class:`DiscordRoleExecutor` is the py-cord implementation.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Optional, Protocol

import discord

from rolekeeper.datatypes.role_datatypes import ExecutionStatus, ExecutionSummary, RoleDirection
from rolekeeper.util.logger import get_logger

logger = get_logger("role_executor")

DEFAULT_GRANT_REASON = "Role granted by RoleKeeper"
DEFAULT_REVOKE_REASON = "Role removed by RoleKeeper"

# Channels whose name contains one of these receive completion reports.
LOG_CHANNEL_HINTS = ("log", "admin", "mod")


class RoleExecutor(Protocol):
    async def mutate(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        direction: RoleDirection,
        *,
        reason: str = "",
    ) -> bool: ...

    async def notify_expiry(self, guild_id: int, user_id: int, role_id: int) -> bool: ...

    async def report_completion(
        self,
        guild_id: int,
        role_id: int,
        summary: ExecutionSummary,
        *,
        reason: str = "",
        recurring: bool = False,
    ) -> bool: ...


class DiscordRoleExecutor:
    """
    Adds and removes roles through a connected py-cord bot.

    A revoke counts as done when the member left the guild, the role was
    deleted, or the member no longer holds the role. A grant needs both the
    member and the role to exist.
    """

    def __init__(self, bot: discord.Bot) -> None:
        self.bot = bot

    async def mutate(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        direction: RoleDirection,
        *,
        reason: str = "",
    ) -> bool:
        revoking = direction is RoleDirection.REVOKE

        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            logger.warning("[ROLE_EXECUTOR] Guild %s not available for %s of role %s", guild_id, direction, role_id)
            return revoking

        role = guild.get_role(int(role_id))
        if role is None:
            logger.warning("[ROLE_EXECUTOR] Role %s no longer exists in guild %s", role_id, guild_id)
            return revoking

        try:
            member = await self._resolve_member(guild, int(user_id))
            if member is None:
                logger.info("[ROLE_EXECUTOR] Member %s is not in guild %s", user_id, guild_id)
                return revoking

            if revoking:
                if role not in member.roles:
                    return True
                await member.remove_roles(role, reason=reason or DEFAULT_REVOKE_REASON)
            else:
                if role in member.roles:
                    return True
                await member.add_roles(role, reason=reason or DEFAULT_GRANT_REASON)
        except discord.Forbidden:
            logger.error(
                "[ROLE_EXECUTOR] Missing permissions to %s role %s for %s in guild %s",
                direction, role_id, user_id, guild_id,
            )
            return False
        except discord.NotFound:
            logger.info("[ROLE_EXECUTOR] Member %s or role %s vanished during %s", user_id, role_id, direction)
            return revoking
        except discord.HTTPException as exc:
            logger.error(
                "[ROLE_EXECUTOR] Discord rejected %s of role %s for %s: %s",
                direction, role_id, user_id, exc,
            )
            return False
        except (asyncio.TimeoutError, OSError) as exc:
            logger.error(
                "[ROLE_EXECUTOR] Could not reach Discord for %s of role %s for %s: %s",
                direction, role_id, user_id, exc,
            )
            return False

        logger.debug("[ROLE_EXECUTOR] %s role %s for %s in guild %s", direction, role_id, user_id, guild_id)
        return True

    async def notify_expiry(self, guild_id: int, user_id: int, role_id: int) -> bool:
        """DM the member that their temporary role ran out. Best effort."""
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            return False
        try:
            member = await self._resolve_member(guild, int(user_id))
        except discord.HTTPException as exc:
            logger.warning("[ROLE_EXECUTOR] Failed to fetch member %s in guild %s: %s", user_id, guild_id, exc)
            return False
        if member is None:
            return False

        role = guild.get_role(int(role_id))
        role_name = role.name if role is not None else f"role {role_id}"
        embed = discord.Embed(
            title="⏰ Temporary Role Expired",
            description=f"Your temporary role **{role_name}** in **{guild.name}** has expired.",
            color=discord.Color.orange(),
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )
        embed.set_footer(text=f"Server ID: {guild.id}")

        try:
            await member.send(embed=embed)
        except discord.Forbidden:
            logger.debug("[ROLE_EXECUTOR] %s does not accept DMs", user_id)
            return False
        except discord.HTTPException as exc:
            logger.warning("[ROLE_EXECUTOR] Could not send expiry notice to %s: %s", user_id, exc)
            return False
        except (asyncio.TimeoutError, OSError) as exc:
            logger.warning("[ROLE_EXECUTOR] Could not reach Discord for expiry notice to %s: %s", user_id, exc)
            return False
        return True

    async def report_completion(
        self,
        guild_id: int,
        role_id: int,
        summary: ExecutionSummary,
        *,
        reason: str = "",
        recurring: bool = False,
    ) -> bool:
        """Post a run summary to the guild's log channel. Best effort."""
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            return False
        channel = self._find_log_channel(guild)
        if channel is None:
            logger.debug("[ROLE_EXECUTOR] No channel for completion report in guild %s", guild_id)
            return False

        role = guild.get_role(int(role_id))
        if recurring:
            title = "🔄 Recurring Role Assignment Executed"
            color = discord.Color.blue()
        else:
            title = "⏰ Scheduled Role Assignment Complete"
            color = discord.Color.green() if summary.status is ExecutionStatus.COMPLETED else discord.Color.orange()
        embed = discord.Embed(
            title=title,
            description=summary.describe(),
            color=color,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )
        embed.add_field(name="✅ Successful", value=f"{summary.succeeded} user(s)", inline=True)
        embed.add_field(name="❌ Failed", value=f"{summary.failed} user(s)", inline=True)
        embed.add_field(name="🎯 Role", value=role.name if role is not None else f"role {role_id}", inline=True)
        embed.add_field(name="📝 Reason", value=reason or "No reason specified", inline=False)

        try:
            await channel.send(embed=embed)
        except discord.HTTPException as exc:
            logger.warning("[ROLE_EXECUTOR] Could not post completion report in guild %s: %s", guild_id, exc)
            return False
        except (asyncio.TimeoutError, OSError) as exc:
            logger.warning("[ROLE_EXECUTOR] Could not reach Discord for completion report: %s", exc)
            return False
        return True

    @staticmethod
    def _find_log_channel(guild: discord.Guild) -> Optional[discord.TextChannel]:
        """A text channel named like a log channel, else the first text channel."""
        channels = list(guild.text_channels)
        for channel in channels:
            if any(hint in channel.name.lower() for hint in LOG_CHANNEL_HINTS):
                return channel
        return channels[0] if channels else None

    @staticmethod
    async def _resolve_member(guild: discord.Guild, user_id: int) -> Optional[discord.Member]:
        """Cached member, else fetched; ``None`` if the user is not in the guild."""
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None
