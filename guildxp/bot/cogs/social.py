"""
guildxp.bot.cogs.social — Message XP
======================================

Listens for ``on_message`` and awards message XP through
:func:`~guildxp.services.profile_service.record_message`.

Pipeline:
1. on_message fires → gate checks (bot author, DM)
2. record_message updates the cached profile (cooldown, XP, level, stats)
3. the flush scheduler persists the change later
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from guildxp.engine.errors import PersistenceError
from guildxp.services.profile_service import XpGain, record_message

if TYPE_CHECKING:
    from guildxp.bot.core import GuildXPBot

logger = logging.getLogger(__name__)


class Social(commands.Cog, name="Social"):
    """Awards XP for guild messages."""

    def __init__(self, bot: GuildXPBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        try:
            await self.handle_message(message)
        except PersistenceError:
            logger.warning(
                "Profile store unavailable; dropped XP for message %s from user %s",
                message.id, message.author.id, exc_info=True,
            )
        except Exception:
            logger.exception(
                "Error processing message %s from user %s",
                message.id, message.author.id,
            )

    async def handle_message(self, message: discord.Message) -> XpGain | None:
        assert message.guild is not None
        xp_cfg = self.bot.cfg.xp
        gain = await record_message(
            self.bot.profiles,
            message.guild.id,
            message.author.id,
            xp_cfg.per_message,
            cooldown_seconds=xp_cfg.message_cooldown_seconds,
            curve=self.bot.level_curve,
            now=message.created_at,
        )
        if gain is not None and gain.leveled_up:
            logger.info(
                "%s reached level %d in guild %s",
                message.author.name, gain.new_level, message.guild.id,
            )
        return gain


async def setup(bot: GuildXPBot) -> None:
    await bot.add_cog(Social(bot))
