"""
guildxp.bot.cogs.tasks — Periodic Background Tasks
====================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Idle eviction** — every ``cache.prune_interval_seconds``, drops profiles
  nobody touched for ``cache.idle_ttl_seconds``.  Dirty profiles are flushed
  first and kept if the flush fails.

The write-back sweep itself is owned by the bot's FlushScheduler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

if TYPE_CHECKING:
    from guildxp.bot.core import GuildXPBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled profile-cache maintenance."""

    def __init__(self, bot: GuildXPBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.prune_loop.change_interval(seconds=self.bot.cfg.cache.prune_interval_seconds)
        self.prune_loop.start()

    async def cog_unload(self) -> None:
        self.prune_loop.cancel()

    @tasks.loop(minutes=5)
    async def prune_loop(self):
        """Evict idle profiles from the cache."""
        try:
            evicted = await self.bot.profiles.prune(self.bot.cfg.cache.idle_ttl_seconds)
        except Exception:
            logger.exception("Profile prune failed", extra={"task": "prune"})
            return
        if evicted:
            logger.debug("Prune task: %s", self.bot.profiles.stats())

    @prune_loop.before_loop
    async def _wait_prune(self):
        await self.bot.wait_until_ready()


async def setup(bot: GuildXPBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
