"""
guildxp.services.profile_service — Profile Mutation Helpers
=============================================================

Shared helpers callable from cogs and any other handler that changes a
member's profile.  Every helper follows the same shape::

    async with cache.editing(guild_id, user_id) as entry:
        ... check, build changes ...    # raise before touching the entry
        entry.stage(**changes)          # once, all or nothing

``editing`` holds the pair's mutation lock, so a check ("enough gold?")
and the write it guards cannot interleave with another handler.  Sub-
documents (inventory, stats, achievements) are copied before they are
changed; the staged value is always a fresh object.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from guildxp.config import StreakReward, XpSettings
from guildxp.engine.cache import ProfileCache
from guildxp.engine.errors import InsufficientFundsError, ProfileInvariantError
from guildxp.engine.levels import DEFAULT_CURVE, LevelCurve
from guildxp.engine.profile import AchievementUnlock, InventoryItem, ProfileRecord

logger = logging.getLogger(__name__)

# Stat keys written by the helpers below
STAT_MESSAGES_SENT = "messages_sent"
STAT_XP_FROM_MESSAGES = "xp_from_messages"
STAT_DAILIES_CLAIMED = "dailies_claimed"
STAT_MAX_STREAK = "max_streak"
STAT_XP_FROM_VOICE = "xp_from_voice"
STAT_VOICE_SECONDS = "voice_seconds"


@dataclass(frozen=True, slots=True)
class XpGain:
    """Result of an XP award."""

    amount: int
    xp: int
    old_level: int
    new_level: int

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


@dataclass(frozen=True, slots=True)
class DailyClaim:
    """Result of a daily claim attempt.

    ``xp`` and ``gold`` are what was paid out (streak factor and any
    streak bonus included); both are 0 when the claim was denied.
    """

    granted: bool
    streak: int
    increased_streak: bool = False
    xp: int = 0
    gold: int = 0
    xp_gain: XpGain | None = None
    streak_reward: StreakReward | None = None

    @property
    def leveled_up(self) -> bool:
        return self.xp_gain is not None and self.xp_gain.leveled_up


# ---------------------------------------------------------------------------
# Internal helpers (pure: they build changes, callers stage them)
# ---------------------------------------------------------------------------
def _bumped_stats(stats: Mapping[str, int | float], deltas: Mapping[str, int | float]) -> dict:
    for name, delta in deltas.items():
        if delta < 0:
            raise ProfileInvariantError(f"stat {name!r} cannot decrease (delta {delta})")
    bumped = dict(stats)
    for name, delta in deltas.items():
        bumped[name] = bumped.get(name, 0) + delta
    return bumped


def _xp_changes(profile: ProfileRecord, amount: int, curve: LevelCurve) -> tuple[dict, XpGain]:
    if amount < 0:
        raise ProfileInvariantError(f"XP awards cannot be negative (got {amount})")
    old_level = profile.level
    new_xp = profile.xp + amount
    # Levels never go down, even if the curve is reconfigured.
    new_level = max(old_level, curve.level_for_xp(new_xp))

    changes: dict = {"xp": new_xp}
    if new_level != old_level:
        changes["level"] = new_level
    return changes, XpGain(amount=amount, xp=new_xp, old_level=old_level, new_level=new_level)


def _log_level_up(guild_id: int, user_id: int, gain: XpGain | None) -> None:
    if gain is not None and gain.leveled_up:
        logger.info(
            "Profile %d:%d leveled up %d → %d",
            guild_id, user_id, gain.old_level, gain.new_level,
        )


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------
async def update_inventory(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    inventory: Mapping[str, InventoryItem],
    new_gold_balance: int | None = None,
) -> dict[str, InventoryItem]:
    """Replace the inventory (and optionally the gold balance).

    Stacks with quantity ≤ 0 are dropped rather than stored.
    """
    if new_gold_balance is not None and new_gold_balance < 0:
        raise ProfileInvariantError(f"gold must not be negative (got {new_gold_balance})")

    cleaned = {
        item_id: dataclasses.replace(item)
        for item_id, item in inventory.items()
        if item.quantity > 0
    }
    async with cache.editing(guild_id, user_id) as entry:
        changes: dict = {"inventory": cleaned}
        if new_gold_balance is not None:
            changes["gold"] = new_gold_balance
        entry.stage(**changes)
    return cleaned


async def give_item(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    item: InventoryItem,
    quantity: int,
) -> InventoryItem:
    """Add *quantity* of *item* to the member's inventory; return the stack."""
    if quantity <= 0:
        raise ValueError(f"quantity must be positive (got {quantity})")

    async with cache.editing(guild_id, user_id) as entry:
        inventory = dict(entry.profile.inventory)
        existing = inventory.get(item.id)
        if existing is not None:
            stack = dataclasses.replace(existing, quantity=existing.quantity + quantity)
        else:
            stack = dataclasses.replace(item, quantity=quantity)
        inventory[item.id] = stack
        entry.stage(inventory=inventory)
    return stack


async def remove_item(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    item_id: str,
    quantity: int | None = None,
) -> int:
    """Remove *quantity* of an item (all of it when ``None``).

    Returns the remaining quantity; a stack that reaches zero is deleted.

    Raises
    ------
    KeyError
        If the member does not hold the item.
    """
    if quantity is not None and quantity <= 0:
        raise ValueError(f"quantity must be positive (got {quantity})")

    async with cache.editing(guild_id, user_id) as entry:
        inventory = dict(entry.profile.inventory)
        stack = inventory.get(item_id)
        if stack is None:
            raise KeyError(item_id)

        remaining = 0 if quantity is None else stack.quantity - quantity
        if remaining <= 0:
            del inventory[item_id]
            remaining = 0
        else:
            inventory[item_id] = dataclasses.replace(stack, quantity=remaining)
        entry.stage(inventory=inventory)
    return remaining


async def clear_inventory(cache: ProfileCache, guild_id: int, user_id: int) -> None:
    async with cache.editing(guild_id, user_id) as entry:
        entry.stage(inventory={})




# ---------------------------------------------------------------------------
# Economy
# ---------------------------------------------------------------------------
async def adjust_gold(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    delta: int,
    *,
    stat: str | None = None,
) -> int:
    """Add (or, with a negative *delta*, spend) gold; return the new balance.

    *stat*, if given, is a counter incremented by ``abs(delta)`` (for
    example ``"gold_earned"`` or ``"gold_spent"``).

    Raises
    ------
    InsufficientFundsError
        If the balance would drop below zero.  Nothing is changed.
    """
    async with cache.editing(guild_id, user_id) as entry:
        balance = entry.profile.gold
        new_balance = balance + delta
        if new_balance < 0:
            raise InsufficientFundsError(balance, -delta)
        changes: dict = {"gold": new_balance}
        if stat is not None and delta:
            changes["user_stats"] = _bumped_stats(entry.profile.user_stats, {stat: abs(delta)})
        entry.stage(**changes)
    return new_balance


async def add_xp(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    amount: int,
    *,
    curve: LevelCurve | None = None,
    stat: str | None = None,
) -> XpGain:
    """Award XP and recompute the level with *curve*."""
    async with cache.editing(guild_id, user_id) as entry:
        changes, gain = _xp_changes(entry.profile, amount, curve or DEFAULT_CURVE)
        if stat is not None:
            changes["user_stats"] = _bumped_stats(entry.profile.user_stats, {stat: amount})
        entry.stage(**changes)
    _log_level_up(guild_id, user_id, gain)
    return gain


# ---------------------------------------------------------------------------
# Stats & achievements
# ---------------------------------------------------------------------------
async def increment_stats(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    **deltas: int | float,
) -> dict[str, int | float]:
    """Increase stat counters; counters never decrease."""
    async with cache.editing(guild_id, user_id) as entry:
        stats = _bumped_stats(entry.profile.user_stats, deltas)
        entry.stage(user_stats=stats)
    return dict(stats)


async def unlock_achievement(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    achievement_id: str,
    *,
    at: datetime | None = None,
    progress: int | None = None,
) -> bool:
    """Record an unlock.  Returns ``False`` if it was already unlocked."""
    async with cache.editing(guild_id, user_id) as entry:
        if achievement_id in entry.profile.achievements:
            return False
        achievements = dict(entry.profile.achievements)
        achievements[achievement_id] = AchievementUnlock(
            unlocked_at=at or datetime.now(UTC), progress=progress,
        )
        entry.stage(achievements=achievements)
    return True


# ---------------------------------------------------------------------------
# Streaks & daily reward
# ---------------------------------------------------------------------------
async def claim_daily(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    *,
    settings: XpSettings | None = None,
    curve: LevelCurve | None = None,
    now: datetime | None = None,
) -> DailyClaim:
    """Claim the daily reward and update the streak.

    One claim per UTC calendar day, and at least 24 h between claims.
    A claim 24–48 h after the previous one extends the streak; anything
    later restarts it at 1.

    The payout is ``daily_xp`` XP and ``daily_gold`` gold, plus the
    :class:`StreakReward` configured for the new streak length (only when
    the streak changed), all scaled by
    ``1 + streak_multiplier * (streak - 1)`` and rounded down.
    """
    settings = settings or XpSettings()
    now = now or datetime.now(UTC)
    async with cache.editing(guild_id, user_id) as entry:
        profile = entry.profile
        previous = profile.streak_count
        last = profile.last_daily_at
        if last is not None:
            elapsed = now - last
            if last.date() == now.date() or elapsed < timedelta(hours=24):
                return DailyClaim(granted=False, streak=previous)
            streak = previous + 1 if elapsed < timedelta(hours=48) else 1
        else:
            streak = 1

        reward = settings.streak_rewards.get(streak) if streak != previous else None
        factor = 1 + settings.streak_multiplier * (streak - 1)
        xp_award = math.floor((settings.daily_xp + (reward.xp_bonus if reward else 0)) * factor)
        gold_award = math.floor(
            (settings.daily_gold + (reward.gold_bonus if reward else 0)) * factor
        )

        changes, gain = _xp_changes(profile, xp_award, curve or DEFAULT_CURVE)
        deltas: dict[str, int] = {STAT_DAILIES_CLAIMED: 1}
        best = profile.user_stats.get(STAT_MAX_STREAK, 0)
        if streak > best:
            deltas[STAT_MAX_STREAK] = streak - best
        changes.update(
            gold=profile.gold + gold_award,
            streak_count=streak,
            last_daily_at=now,
            user_stats=_bumped_stats(profile.user_stats, deltas),
        )
        entry.stage(**changes)

    if reward is not None:
        logger.info(
            "Profile %d:%d reached a %d-day streak (+%d XP, +%d gold)",
            guild_id, user_id, streak, reward.xp_bonus, reward.gold_bonus,
        )
    _log_level_up(guild_id, user_id, gain)
    return DailyClaim(
        granted=True,
        streak=streak,
        increased_streak=streak > previous,
        xp=xp_award,
        gold=gold_award,
        xp_gain=gain,
        streak_reward=reward,
    )


# ---------------------------------------------------------------------------
# Activity XP (messages, voice)
# ---------------------------------------------------------------------------
async def record_message(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    xp_amount: int,
    *,
    cooldown_seconds: float = 0,
    curve: LevelCurve | None = None,
    now: datetime | None = None,
) -> XpGain | None:
    """Count a message and award XP unless the member is on cooldown.

    Returns ``None`` when the cooldown swallowed the award (the message
    counter is still incremented).
    """
    if xp_amount < 0:
        raise ProfileInvariantError(f"XP awards cannot be negative (got {xp_amount})")
    now = now or datetime.now(UTC)
    async with cache.editing(guild_id, user_id) as entry:
        profile = entry.profile
        last = profile.last_message_at
        if last is not None and cooldown_seconds > 0:
            if (now - last).total_seconds() < cooldown_seconds:
                entry.stage(
                    user_stats=_bumped_stats(profile.user_stats, {STAT_MESSAGES_SENT: 1}),
                )
                return None

        changes, gain = _xp_changes(profile, xp_amount, curve or DEFAULT_CURVE)
        changes["last_message_at"] = now
        changes["user_stats"] = _bumped_stats(
            profile.user_stats,
            {STAT_MESSAGES_SENT: 1, STAT_XP_FROM_MESSAGES: xp_amount},
        )
        entry.stage(**changes)
    _log_level_up(guild_id, user_id, gain)
    return gain


async def record_voice_session(
    cache: ProfileCache,
    guild_id: int,
    user_id: int,
    seconds: float,
    *,
    xp_per_minute: int,
    min_minutes: int = 1,
    curve: LevelCurve | None = None,
) -> XpGain | None:
    """Pay XP for a finished voice session of *seconds*.

    Whole minutes only.  Sessions shorter than *min_minutes* are ignored
    without touching the profile and return ``None``.
    """
    if seconds < 0:
        raise ValueError(f"session length cannot be negative (got {seconds})")
    minutes = int(seconds // 60)
    if minutes < max(min_minutes, 1):
        return None

    amount = xp_per_minute * minutes
    async with cache.editing(guild_id, user_id) as entry:
        profile = entry.profile
        changes, gain = _xp_changes(profile, amount, curve or DEFAULT_CURVE)
        changes["user_stats"] = _bumped_stats(
            profile.user_stats,
            {STAT_XP_FROM_VOICE: amount, STAT_VOICE_SECONDS: minutes * 60},
        )
        entry.stage(**changes)
    _log_level_up(guild_id, user_id, gain)
    return gain
