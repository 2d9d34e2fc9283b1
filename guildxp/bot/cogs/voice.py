"""
guildxp.bot.cogs.voice — Voice Channel XP
===========================================

Tracks when members join voice channels and pays XP for the time spent
when they leave (or switch channel) through
:func:`~guildxp.services.profile_service.record_voice_session`.

Sessions are keyed by (guild, member) and live in memory only; a restart
forgets open sessions.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from guildxp.engine.errors import PersistenceError
from guildxp.engine.profile import ProfileKey
from guildxp.services.profile_service import XpGain, record_voice_session

if TYPE_CHECKING:
    from guildxp.bot.core import GuildXPBot

logger = logging.getLogger(__name__)


class Voice(commands.Cog, name="Voice"):
    """Tracks voice channel presence and awards XP on leave."""

    def __init__(self, bot: GuildXPBot) -> None:
        self.bot = bot
        # {(guild_id, user_id): join_timestamp}
        self._voice_sessions: dict[ProfileKey, float] = {}

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Track voice join/leave/move events."""
        if member.bot:
            return
        try:
            await self._handle_voice_update(member, before, after)
        except PersistenceError:
            logger.warning(
                "Profile store unavailable; dropped voice XP for user %s",
                member.id, exc_info=True,
            )
        except Exception:
            logger.exception("Error processing voice state update for user %s", member.id)

    async def _handle_voice_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> XpGain | None:
        if before.channel == after.channel:
            return None  # mute/deafen toggles

        key = (member.guild.id, member.id)
        now = time.time()

        # Leaving or moving closes the current session; joining or moving
        # opens a new one.  The new session is recorded before paying out.
        joined_at = None
        if before.channel is not None:
            joined_at = self._voice_sessions.pop(key, None)
            logger.debug("%s left voice channel %s", member, before.channel)
        if after.channel is not None:
            self._voice_sessions[key] = now
            logger.debug("%s joined voice channel %s", member, after.channel)

        if joined_at is None:
            return None
        return await self._pay_session(member, now - joined_at)

    async def _pay_session(self, member: discord.Member, seconds: float) -> XpGain | None:
        xp_cfg = self.bot.cfg.xp
        gain = await record_voice_session(
            self.bot.profiles,
            member.guild.id,
            member.id,
            seconds,
            xp_per_minute=xp_cfg.voice_xp_per_minute,
            min_minutes=xp_cfg.voice_min_minutes,
            curve=self.bot.level_curve,
        )
        if gain is not None:
            logger.info(
                "%s earned %d voice XP for %.0f min in guild %s",
                member.name, gain.amount, seconds / 60, member.guild.id,
            )
        return gain


async def setup(bot: GuildXPBot) -> None:
    await bot.add_cog(Voice(bot))
