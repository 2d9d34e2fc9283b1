"""
tests/test_profile_service.py — Profile Mutation Helper Tests
===============================================================

Inventory floor, gold checks, XP/levels, stat counters, achievements, the
daily streak rule and payouts, message cooldowns and voice sessions, all against the in-memory gateway.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from guildxp.config import StreakReward, XpSettings
from guildxp.engine.errors import InsufficientFundsError, ProfileInvariantError
from guildxp.engine.levels import LevelCurve
from guildxp.engine.profile import InventoryItem, ProfileRecord
from guildxp.services.profile_service import (
    STAT_DAILIES_CLAIMED,
    STAT_MAX_STREAK,
    STAT_MESSAGES_SENT,
    STAT_VOICE_SECONDS,
    STAT_XP_FROM_MESSAGES,
    STAT_XP_FROM_VOICE,
    add_xp,
    adjust_gold,
    claim_daily,
    clear_inventory,
    give_item,
    increment_stats,
    record_message,
    record_voice_session,
    remove_item,
    unlock_achievement,
    update_inventory,
)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


G, U = 100, 200


def _potion(quantity: int = 1) -> InventoryItem:
    return InventoryItem(id="potion", name="Health Potion", quantity=quantity, emoji="🧪")


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------
class TestInventory:
    def test_update_inventory_drops_empty_stacks(self, cache, gateway):
        inventory = {
            "potion": _potion(3),
            "husk": InventoryItem(id="husk", name="Empty Husk", quantity=0),
            "debt": InventoryItem(id="debt", name="Debt", quantity=-2),
        }

        async def scenario():
            await update_inventory(cache, G, U, inventory, new_gold_balance=75)
            await cache.flush(G, U)
            return cache.peek(G, U)

        entry = run_async(scenario())
        assert set(entry.profile.inventory) == {"potion"}
        assert entry.profile.gold == 75
        assert set(gateway.rows[(G, U)]["inventory"]) == {"potion"}
        assert gateway.rows[(G, U)]["gold"] == "75"

    def test_update_inventory_rejects_negative_gold(self, cache):
        with pytest.raises(ProfileInvariantError):
            run_async(update_inventory(cache, G, U, {}, new_gold_balance=-1))

    def test_give_item_stacks(self, cache):
        async def scenario():
            await give_item(cache, G, U, _potion(), 2)
            return await give_item(cache, G, U, _potion(), 3)

        stack = run_async(scenario())
        assert stack.quantity == 5
        assert stack.emoji == "🧪"

    def test_give_item_rejects_non_positive_quantity(self, cache):
        with pytest.raises(ValueError):
            run_async(give_item(cache, G, U, _potion(), 0))

    def test_remove_item_partial(self, cache):
        async def scenario():
            await give_item(cache, G, U, _potion(), 5)
            return await remove_item(cache, G, U, "potion", 2)

        assert run_async(scenario()) == 3
        assert cache.peek(G, U).profile.inventory["potion"].quantity == 3

    def test_remove_item_to_zero_deletes_stack(self, cache, gateway):
        async def scenario():
            await give_item(cache, G, U, _potion(), 2)
            remaining = await remove_item(cache, G, U, "potion", 5)
            await cache.flush(G, U)
            return remaining

        assert run_async(scenario()) == 0
        assert "potion" not in cache.peek(G, U).profile.inventory
        assert gateway.rows[(G, U)]["inventory"] == {}

    def test_remove_missing_item_raises(self, cache):
        with pytest.raises(KeyError):
            run_async(remove_item(cache, G, U, "potion"))

    def test_clear_inventory(self, cache):
        async def scenario():
            await give_item(cache, G, U, _potion(), 2)
            await clear_inventory(cache, G, U)

        run_async(scenario())
        entry = cache.peek(G, U)
        assert entry.profile.inventory == {}
        assert entry.pending_changes["inventory"] == {}


# ---------------------------------------------------------------------------
# Economy
# ---------------------------------------------------------------------------
class TestGold:
    def test_adjust_gold_adds_and_spends(self, cache):
        async def scenario():
            await adjust_gold(cache, G, U, 100, stat="gold_earned")
            return await adjust_gold(cache, G, U, -40, stat="gold_spent")

        assert run_async(scenario()) == 60
        stats = cache.peek(G, U).profile.user_stats
        assert stats == {"gold_earned": 100, "gold_spent": 40}

    def test_overspend_is_rejected_not_clamped(self, cache, gateway):
        gateway.seed(ProfileRecord(guild_id=G, user_id=U, gold=30))

        async def scenario():
            with pytest.raises(InsufficientFundsError) as exc_info:
                await adjust_gold(cache, G, U, -50)
            return exc_info.value

        err = run_async(scenario())
        assert (err.balance, err.requested) == (30, 50)
        entry = cache.peek(G, U)
        assert entry.profile.gold == 30
        assert entry.dirty is False

    def test_huge_balances_stay_exact(self, cache, gateway):
        big = 10 ** 30

        async def scenario():
            await adjust_gold(cache, G, U, big)
            await adjust_gold(cache, G, U, 1)
            await cache.flush(G, U)

        run_async(scenario())
        assert gateway.rows[(G, U)]["gold"] == str(big + 1)


# ---------------------------------------------------------------------------
# XP & levels
# ---------------------------------------------------------------------------
class TestXp:
    def test_add_xp_levels_up(self, cache):
        gain = run_async(add_xp(cache, G, U, 120))
        assert gain.xp == 120
        assert (gain.old_level, gain.new_level) == (0, 2)
        assert gain.leveled_up
        assert cache.peek(G, U).pending_changes["level"] == 2

    def test_add_xp_with_custom_curve(self, cache):
        curve = LevelCurve(curve="linear", params={"rate": 10})
        gain = run_async(add_xp(cache, G, U, 35, curve=curve))
        assert gain.new_level == 3

    def test_level_never_decreases(self, cache, gateway):
        gateway.seed(ProfileRecord(guild_id=G, user_id=U, xp=0, level=10))
        gain = run_async(add_xp(cache, G, U, 5))
        assert gain.new_level == 10
        assert "level" not in cache.peek(G, U).pending_changes

    def test_negative_xp_rejected(self, cache):
        with pytest.raises(ProfileInvariantError):
            run_async(add_xp(cache, G, U, -1))


# ---------------------------------------------------------------------------
# Stats & achievements
# ---------------------------------------------------------------------------
class TestStatsAndAchievements:
    def test_increment_stats_accumulates(self, cache):
        async def scenario():
            await increment_stats(cache, G, U, voice_minutes=5)
            return await increment_stats(cache, G, U, voice_minutes=3, reactions=1)

        assert run_async(scenario()) == {"voice_minutes": 8, "reactions": 1}

    def test_stats_cannot_decrease(self, cache):
        with pytest.raises(ProfileInvariantError):
            run_async(increment_stats(cache, G, U, voice_minutes=-1))

    def test_unlock_achievement_once(self, cache):
        at = datetime(2026, 3, 1, tzinfo=UTC)

        async def scenario():
            first = await unlock_achievement(cache, G, U, "first_steps", at=at)
            second = await unlock_achievement(cache, G, U, "first_steps")
            return first, second

        assert run_async(scenario()) == (True, False)
        unlock = cache.peek(G, U).profile.achievements["first_steps"]
        assert unlock.unlocked_at == at


# ---------------------------------------------------------------------------
# Daily streaks
# ---------------------------------------------------------------------------
class TestClaimDaily:
    T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def test_streak_grows_then_resets(self, cache):
        async def scenario():
            first = await claim_daily(cache, G, U, now=self.T0)
            same_day = await claim_daily(cache, G, U, now=self.T0 + timedelta(hours=3))
            next_day = await claim_daily(cache, G, U, now=self.T0 + timedelta(hours=30))
            lapsed = await claim_daily(cache, G, U, now=self.T0 + timedelta(hours=102))
            return first, same_day, next_day, lapsed

        first, same_day, next_day, lapsed = run_async(scenario())
        assert (first.granted, first.streak, first.increased_streak) == (True, 1, True)
        assert (same_day.granted, same_day.streak) == (False, 1)
        assert (next_day.granted, next_day.streak, next_day.increased_streak) == (True, 2, True)
        assert (lapsed.granted, lapsed.streak, lapsed.increased_streak) == (True, 1, False)

        stats = cache.peek(G, U).profile.user_stats
        assert stats[STAT_DAILIES_CLAIMED] == 3
        assert stats[STAT_MAX_STREAK] == 2

    def test_new_calendar_day_within_24h_is_denied(self, cache):
        late = datetime(2026, 1, 1, 23, 0, tzinfo=UTC)

        async def scenario():
            await claim_daily(cache, G, U, now=late)
            return await claim_daily(cache, G, U, now=late + timedelta(hours=2))

        assert run_async(scenario()).granted is False

    def test_payout_scales_with_streak_and_adds_bonus(self, cache):
        settings = XpSettings(
            daily_xp=100,
            daily_gold=50,
            streak_multiplier=0.5,
            streak_rewards={2: StreakReward(xp_bonus=20, gold_bonus=10, message="Two in a row")},
        )

        async def scenario():
            first = await claim_daily(cache, G, U, settings=settings, now=self.T0)
            second = await claim_daily(
                cache, G, U, settings=settings, now=self.T0 + timedelta(hours=30),
            )
            return first, second

        first, second = run_async(scenario())
        assert (first.xp, first.gold, first.streak_reward) == (100, 50, None)
        # (100 + 20) * 1.5 and (50 + 10) * 1.5
        assert (second.xp, second.gold) == (180, 90)
        assert second.streak_reward.message == "Two in a row"

        profile = cache.peek(G, U).profile
        assert (profile.xp, profile.gold, profile.streak_count) == (280, 140, 2)

    def test_bonus_not_repaid_when_streak_restarts_at_same_length(self, cache):
        settings = XpSettings(streak_rewards={1: StreakReward(gold_bonus=500)})

        async def scenario():
            first = await claim_daily(cache, G, U, settings=settings, now=self.T0)
            lapsed = await claim_daily(
                cache, G, U, settings=settings, now=self.T0 + timedelta(hours=102),
            )
            return first, lapsed

        first, lapsed = run_async(scenario())
        assert first.gold == 550
        assert (lapsed.streak, lapsed.gold, lapsed.streak_reward) == (1, 50, None)

    def test_daily_xp_levels_up_in_one_write(self, cache):
        claim = run_async(claim_daily(cache, G, U, now=self.T0))
        assert claim.leveled_up
        assert claim.xp_gain.new_level == 2

        entry = cache.peek(G, U)
        assert entry.profile.level == 2
        assert set(entry.pending_changes) == {
            "xp", "level", "gold", "streak_count", "last_daily_at", "user_stats",
        }

    def test_denied_claim_pays_nothing(self, cache):
        async def scenario():
            await claim_daily(cache, G, U, now=self.T0)
            return await claim_daily(cache, G, U, now=self.T0 + timedelta(hours=1))

        denied = run_async(scenario())
        assert (denied.granted, denied.xp, denied.gold) == (False, 0, 0)
        assert cache.peek(G, U).profile.gold == 50


# ---------------------------------------------------------------------------
# Message XP
# ---------------------------------------------------------------------------
class TestRecordMessage:
    def test_cooldown_swallows_xp_but_counts_message(self, cache):
        t0 = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)

        async def scenario():
            first = await record_message(cache, G, U, 15, cooldown_seconds=60, now=t0)
            spam = await record_message(
                cache, G, U, 15, cooldown_seconds=60, now=t0 + timedelta(seconds=10),
            )
            later = await record_message(
                cache, G, U, 15, cooldown_seconds=60, now=t0 + timedelta(seconds=61),
            )
            return first, spam, later

        first, spam, later = run_async(scenario())
        assert first.amount == 15
        assert spam is None
        assert later.xp == 30

        profile = cache.peek(G, U).profile
        assert profile.user_stats[STAT_MESSAGES_SENT] == 3
        assert profile.user_stats[STAT_XP_FROM_MESSAGES] == 30
        assert profile.last_message_at == t0 + timedelta(seconds=61)

    def test_no_cooldown_awards_every_message(self, cache):
        async def scenario():
            for _ in range(4):
                await record_message(cache, G, U, 15)

        run_async(scenario())
        assert cache.peek(G, U).profile.xp == 60

    def test_negative_award_changes_nothing(self, cache):
        t0 = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)

        async def scenario():
            await record_message(cache, G, U, 15, cooldown_seconds=60, now=t0)
            with pytest.raises(ProfileInvariantError):
                await record_message(
                    cache, G, U, -5, cooldown_seconds=60, now=t0 + timedelta(minutes=5),
                )
            return cache.peek(G, U)

        entry = run_async(scenario())
        assert entry.profile.xp == 15
        assert entry.profile.last_message_at == t0
        assert entry.profile.user_stats[STAT_MESSAGES_SENT] == 1
        assert entry.version == 1

    def test_negative_award_on_fresh_profile_creates_nothing(self, cache, gateway):
        with pytest.raises(ProfileInvariantError):
            run_async(record_message(cache, G, U, -5))
        assert (G, U) not in cache
        assert gateway.load_calls == []

    def test_award_is_staged_in_one_write(self, cache):
        run_async(record_message(cache, G, U, 120))
        entry = cache.peek(G, U)
        assert entry.version == 1
        assert set(entry.pending_changes) == {"xp", "level", "last_message_at", "user_stats"}


# ---------------------------------------------------------------------------
# Voice XP
# ---------------------------------------------------------------------------
class TestRecordVoiceSession:
    def test_pays_whole_minutes(self, cache):
        gain = run_async(record_voice_session(cache, G, U, 150, xp_per_minute=5))
        assert gain.amount == 10

        stats = cache.peek(G, U).profile.user_stats
        assert stats[STAT_XP_FROM_VOICE] == 10
        assert stats[STAT_VOICE_SECONDS] == 120

    def test_sessions_accumulate(self, cache):
        async def scenario():
            await record_voice_session(cache, G, U, 60, xp_per_minute=5)
            return await record_voice_session(cache, G, U, 600, xp_per_minute=5)

        gain = run_async(scenario())
        assert gain.xp == 55
        assert cache.peek(G, U).profile.user_stats[STAT_VOICE_SECONDS] == 660

    def test_short_session_touches_nothing(self, cache, gateway):
        gain = run_async(record_voice_session(cache, G, U, 59, xp_per_minute=5))
        assert gain is None
        assert (G, U) not in cache
        assert gateway.load_calls == []

    def test_min_minutes_threshold(self, cache):
        async def scenario():
            short = await record_voice_session(
                cache, G, U, 240, xp_per_minute=5, min_minutes=5,
            )
            long = await record_voice_session(
                cache, G, U, 300, xp_per_minute=5, min_minutes=5,
            )
            return short, long

        short, long = run_async(scenario())
        assert short is None
        assert long.amount == 25

    def test_negative_duration_rejected(self, cache):
        with pytest.raises(ValueError):
            run_async(record_voice_session(cache, G, U, -1, xp_per_minute=5))
