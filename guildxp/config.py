"""
guildxp.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for tunables (bot prefix, message / daily / voice XP,
profile cache timing, level curve).  Secrets (``DISCORD_TOKEN``,
``DATABASE_URL``) stay in ``.env``.

Usage::

    from guildxp.config import load_config

    cfg = load_config()                   # reads ./config.yaml by default
    print(cfg.cache.flush_interval_seconds)
    print(cfg.levels.level_for_xp(1200))
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from guildxp.engine.levels import LevelCurve


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StreakReward:
    """One-off bonus paid when a daily streak reaches a given length."""

    xp_bonus: int = 0
    gold_bonus: int = 0
    message: str | None = None


@dataclass(frozen=True, slots=True)
class XpSettings:
    """Message, daily and voice XP tunables."""

    per_message: int = 15
    message_cooldown_seconds: float = 60.0
    daily_xp: int = 100
    daily_gold: int = 50
    # Daily reward factor is 1 + streak_multiplier * (streak - 1)
    streak_multiplier: float = 0.0
    streak_rewards: Mapping[int, StreakReward] = field(default_factory=dict)
    voice_xp_per_minute: int = 5
    voice_min_minutes: int = 1


@dataclass(frozen=True, slots=True)
class CacheSettings:
    """Profile cache and flush scheduler timing (seconds)."""

    flush_interval_seconds: float = 30.0
    min_write_interval_seconds: float = 5.0
    load_timeout_seconds: float = 10.0
    flush_timeout_seconds: float = 10.0
    idle_ttl_seconds: float = 300.0
    prune_interval_seconds: float = 300.0


@dataclass(frozen=True, slots=True)
class GuildXPConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    bot_prefix: str
    xp: XpSettings = field(default_factory=XpSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    levels: LevelCurve = field(default_factory=LevelCurve)


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"config section {name!r} must be a mapping")
    return value


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> GuildXPConfig:
    """Read *path* and return a :class:`GuildXPConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a section has the wrong shape or a value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    xp_raw = _section(raw, "xp")
    cache_raw = _section(raw, "cache")
    xp_defaults = XpSettings()
    cache_defaults = CacheSettings()

    streak_rewards = {
        int(streak): StreakReward(
            xp_bonus=int(reward.get("xp_bonus", 0)),
            gold_bonus=int(reward.get("gold_bonus", 0)),
            message=reward.get("message"),
        )
        for streak, reward in _section(xp_raw, "streak_rewards").items()
    }
    xp = XpSettings(
        per_message=int(xp_raw.get("per_message", xp_defaults.per_message)),
        message_cooldown_seconds=float(
            xp_raw.get("message_cooldown_seconds", xp_defaults.message_cooldown_seconds)
        ),
        daily_xp=int(xp_raw.get("daily_xp", xp_defaults.daily_xp)),
        daily_gold=int(xp_raw.get("daily_gold", xp_defaults.daily_gold)),
        streak_multiplier=float(
            xp_raw.get("streak_multiplier", xp_defaults.streak_multiplier)
        ),
        streak_rewards=streak_rewards,
        voice_xp_per_minute=int(
            xp_raw.get("voice_xp_per_minute", xp_defaults.voice_xp_per_minute)
        ),
        voice_min_minutes=int(xp_raw.get("voice_min_minutes", xp_defaults.voice_min_minutes)),
    )
    for name in (
        "per_message", "daily_xp", "daily_gold", "streak_multiplier", "voice_xp_per_minute",
    ):
        if getattr(xp, name) < 0:
            raise ValueError(f"xp.{name} must not be negative")
    cache = CacheSettings(**{
        f.name: float(cache_raw.get(f.name, getattr(cache_defaults, f.name)))
        for f in fields(CacheSettings)
    })
    for f in fields(CacheSettings):
        if getattr(cache, f.name) <= 0:
            raise ValueError(f"cache.{f.name} must be positive")

    return GuildXPConfig(
        bot_prefix=raw["bot_prefix"],
        xp=xp,
        cache=cache,
        levels=LevelCurve.from_dict(_section(raw, "levels")),
    )
