"""
GuildXP — Per-Guild Profiles, Economy and Progression for Discord
===================================================================
Keeps every member's XP, level, gold, inventory, stats, achievements and
streak in an in-memory, guild-scoped cache, and writes accumulated changes
back to PostgreSQL in the background.

Package layout::

    guildxp/
    ├── config.py              # YAML → typed Python config
    ├── database/
    │   ├── engine.py          # SQLAlchemy engine + async helper
    │   └── models.py          # user_guild_profiles ORM model
    ├── engine/
    │   ├── profile.py         # ProfileRecord, ProfileCacheEntry, serialisation
    │   ├── cache.py           # ProfileCache (get / set / flush / prune)
    │   ├── levels.py          # XP → level curve
    │   └── errors.py          # PersistenceError & friends
    ├── services/
    │   ├── profile_gateway.py # SQL implementation of the persistence gateway
    │   ├── profile_service.py # inventory / gold / XP / stats / streak helpers
    │   └── flush_scheduler.py # periodic write-back of dirty profiles
    └── bot/
        ├── core.py            # Bot subclass, owns the cache + scheduler
        └── cogs/
            ├── social.py      # on_message → message XP
            ├── tasks.py       # idle-profile eviction loop
            └── voice.py       # voice sessions → voice XP
"""

__version__ = "0.1.0"
