"""
guildxp.bot.core — Bot Instance & Cog Loader
==============================================

:class:`GuildXPBot` is a ``commands.Bot`` that carries the project-wide
state every cog needs:

1. ``bot.cfg`` — the parsed :class:`GuildXPConfig`.
2. ``bot.engine`` — the SQLAlchemy engine.
3. ``bot.profiles`` — the single process-wide :class:`ProfileCache`.
4. ``bot.scheduler`` — the :class:`FlushScheduler` writing it back.

The scheduler starts in ``setup_hook`` and is stopped in ``close()`` with a
final flush, so a clean shutdown loses no profile changes.
"""

from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands
from sqlalchemy import Engine

from guildxp.config import GuildXPConfig
from guildxp.engine.cache import ProfileCache
from guildxp.services.flush_scheduler import FlushScheduler

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "guildxp.bot.cogs.social",
    "guildxp.bot.cogs.tasks",
    "guildxp.bot.cogs.voice",
]


class GuildXPBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`GuildXPConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    profiles:
        The profile cache shared by every cog.
    """

    def __init__(self, cfg: GuildXPConfig, engine: Engine, profiles: ProfileCache) -> None:
        intents = discord.Intents.default()
        intents.message_content = False   # message XP only needs the author
        intents.members = False
        intents.presences = False

        super().__init__(command_prefix=cfg.bot_prefix, intents=intents)

        self.cfg = cfg
        self.engine = engine
        self.profiles = profiles
        self.level_curve = cfg.levels
        self.scheduler = FlushScheduler(
            profiles,
            interval=cfg.cache.flush_interval_seconds,
            min_write_interval=cfg.cache.min_write_interval_seconds,
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load cogs and start the flush scheduler before connecting.

        A cog that fails to load is logged and skipped.
        """
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        self.scheduler.start(asyncio.get_running_loop())

    async def on_ready(self) -> None:
        assert self.user is not None  # guaranteed after on_ready
        logger.info(
            "Logged in as %s (ID: %s) in %d guild(s)",
            self.user.name, self.user.id, len(self.guilds),
        )

    async def close(self) -> None:
        """Graceful shutdown — stop the scheduler and flush what is left."""
        logger.info("Bot shutting down…")
        await self.scheduler.stop(final_flush=True)
        await super().close()
