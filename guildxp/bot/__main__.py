"""
guildxp.bot.__main__ — Entry point for ``python -m guildxp.bot``
==================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (tunables).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build the profile cache on top of the SQL gateway.
5. Create the GuildXPBot and hand it config + engine + cache.
6. Start the bot (blocking — runs the asyncio event loop).
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from guildxp.bot.core import GuildXPBot
from guildxp.config import load_config
from guildxp.database.engine import create_db_engine, init_db
from guildxp.engine.cache import ProfileCache
from guildxp.services.profile_gateway import SqlProfileGateway

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("guildxp")


def main() -> None:
    """Bootstrap and run the GuildXP bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Tunables.
    cfg = load_config(os.getenv("GUILDXP_CONFIG", "config.yaml"))
    logger.info(
        "Config loaded — flush every %.0fs, idle TTL %.0fs",
        cfg.cache.flush_interval_seconds, cfg.cache.idle_ttl_seconds,
    )

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Profile cache (one per process).
    profiles = ProfileCache(
        SqlProfileGateway(engine),
        load_timeout=cfg.cache.load_timeout_seconds,
        flush_timeout=cfg.cache.flush_timeout_seconds,
    )

    # 5. Bot.
    bot = GuildXPBot(cfg=cfg, engine=engine, profiles=profiles)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting GuildXP bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
