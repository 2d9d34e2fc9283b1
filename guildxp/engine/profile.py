"""
guildxp.engine.profile — Profile Records and Cache Entries
============================================================

The in-memory shape of one member's gamification state inside one guild,
plus the cache wrapper that tracks what still has to reach the database.

Gold and XP are plain Python ``int`` values (arbitrary precision).  They
only become decimal strings at the persistence boundary, see
:func:`serialize_field` / :func:`parse_field`.

No Discord I/O, no DB I/O in this module.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from guildxp.engine.errors import ProfileInvariantError

__all__ = [
    "PROFILE_FIELDS",
    "AchievementUnlock",
    "InventoryItem",
    "ProfileCacheEntry",
    "ProfileKey",
    "ProfileRecord",
    "parse_field",
    "profile_key",
    "serialize_field",
]

# (guild_id, user_id)
ProfileKey = tuple[int, int]

# Persisted fields, in column order.  Identity (guild_id, user_id) is not
# part of a diff.
PROFILE_FIELDS: tuple[str, ...] = (
    "gold",
    "xp",
    "level",
    "streak_count",
    "last_daily_at",
    "last_message_at",
    "inventory",
    "user_stats",
    "achievements",
)


def profile_key(guild_id: int, user_id: int) -> ProfileKey:
    """Build the cache key for a (guild, user) pair.

    Raises
    ------
    ValueError
        If either identifier is not a non-negative integer.
    """
    for name, value in (("guild_id", guild_id), ("user_id", user_id)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    return (guild_id, user_id)


# ---------------------------------------------------------------------------
# Sub-documents
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class InventoryItem:
    """One stack of an item in a member's inventory."""

    id: str
    name: str
    quantity: int
    emoji: str | None = None
    description: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "quantity": self.quantity,
        }
        if self.emoji is not None:
            data["emoji"] = self.emoji
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_json(cls, item_id: str, data: Mapping[str, Any]) -> InventoryItem:
        return cls(
            id=str(data.get("id", item_id)),
            name=str(data.get("name", item_id)),
            quantity=int(data.get("quantity", 0)),
            emoji=data.get("emoji"),
            description=data.get("description"),
        )


@dataclass(slots=True)
class AchievementUnlock:
    """When an achievement was unlocked (and optional progress marker)."""

    unlocked_at: datetime
    progress: int | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"unlocked_at": self.unlocked_at.isoformat()}
        if self.progress is not None:
            data["progress"] = self.progress
        return data

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> AchievementUnlock:
        progress = data.get("progress")
        return cls(
            unlocked_at=_as_utc(data["unlocked_at"]),
            progress=int(progress) if progress is not None else None,
        )


def _as_utc(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        # SQLite hands back naive timestamps; everything we write is UTC.
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Field (de)serialisation — the persistence boundary
# ---------------------------------------------------------------------------
def serialize_field(name: str, value: Any) -> Any:
    """Convert one profile field into its column representation."""
    if name in ("gold", "xp"):
        return str(int(value))
    if name in ("level", "streak_count"):
        return int(value)
    if name == "inventory":
        return {item_id: item.to_json() for item_id, item in value.items()}
    if name == "achievements":
        return {ach_id: unlock.to_json() for ach_id, unlock in value.items()}
    if name == "user_stats":
        return dict(value)
    if name in ("last_daily_at", "last_message_at"):
        return value
    raise KeyError(f"Unknown profile field: {name}")


def parse_field(name: str, value: Any) -> Any:
    """Inverse of :func:`serialize_field`.  ``None`` maps to the field default."""
    if name in ("gold", "xp"):
        return int(value) if value not in (None, "") else 0
    if name in ("level", "streak_count"):
        return int(value or 0)
    if name == "inventory":
        items = {
            item_id: InventoryItem.from_json(item_id, data)
            for item_id, data in (value or {}).items()
        }
        # Never surface an empty stack, even if one slipped into the store.
        return {k: v for k, v in items.items() if v.quantity > 0}
    if name == "achievements":
        return {
            ach_id: AchievementUnlock.from_json(data)
            for ach_id, data in (value or {}).items()
        }
    if name == "user_stats":
        return dict(value or {})
    if name in ("last_daily_at", "last_message_at"):
        return _as_utc(value) if value is not None else None
    raise KeyError(f"Unknown profile field: {name}")


# ---------------------------------------------------------------------------
# ProfileRecord
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ProfileRecord:
    """Gamification state of one user within one guild."""

    guild_id: int
    user_id: int
    gold: int = 0
    xp: int = 0
    level: int = 0
    streak_count: int = 0
    last_daily_at: datetime | None = None
    last_message_at: datetime | None = None
    inventory: dict[str, InventoryItem] = field(default_factory=dict)
    user_stats: dict[str, int | float] = field(default_factory=dict)
    achievements: dict[str, AchievementUnlock] = field(default_factory=dict)

    @property
    def key(self) -> ProfileKey:
        return (self.guild_id, self.user_id)

    def validate(self) -> None:
        """Raise :class:`ProfileInvariantError` if the record must not be stored."""
        if self.gold < 0:
            raise ProfileInvariantError(f"gold must not be negative (got {self.gold})")
        if self.xp < 0:
            raise ProfileInvariantError(f"xp must not be negative (got {self.xp})")
        if self.level < 0:
            raise ProfileInvariantError(f"level must not be negative (got {self.level})")
        if self.streak_count < 0:
            raise ProfileInvariantError(
                f"streak_count must not be negative (got {self.streak_count})"
            )
        for item_id, item in self.inventory.items():
            if item.quantity <= 0:
                raise ProfileInvariantError(
                    f"inventory item {item_id!r} has non-positive quantity {item.quantity}"
                )

    def to_columns(self, fields: Iterable[str] | None = None) -> dict[str, Any]:
        """Serialise all fields, or only *fields*, into column values."""
        names = PROFILE_FIELDS if fields is None else tuple(fields)
        return {name: serialize_field(name, getattr(self, name)) for name in names}

    @classmethod
    def from_columns(
        cls, guild_id: int, user_id: int, columns: Mapping[str, Any],
    ) -> ProfileRecord:
        """Build a record from column values (missing columns take defaults)."""
        return cls(
            guild_id=guild_id,
            user_id=user_id,
            **{name: parse_field(name, columns.get(name)) for name in PROFILE_FIELDS},
        )


# ---------------------------------------------------------------------------
# ProfileCacheEntry
# ---------------------------------------------------------------------------
@dataclass(slots=True, eq=False)
class ProfileCacheEntry:
    """A cached :class:`ProfileRecord` plus its write-back bookkeeping.

    ``pending_changes`` maps field name → value that the database has not
    seen yet.  ``is_new`` marks a record that does not exist in the store
    at all; its first flush sends every field.  ``version`` is bumped by
    the cache on every ``set`` and lets it notice a write built from a
    stale copy.
    """

    profile: ProfileRecord
    pending_changes: dict[str, Any] | None = None
    dirty: bool = False
    last_wrote_to_db: float | None = None
    last_loaded: float = field(default_factory=time.time)
    is_new: bool = False
    version: int = 0

    @property
    def key(self) -> ProfileKey:
        return self.profile.key

    def owes_flush(self) -> bool:
        return self.is_new or bool(self.pending_changes)

    def stage(self, **changes: Any) -> None:
        """Apply *changes* to the profile and fold them into the pending diff.

        Later values for a field override earlier unflushed ones; fields
        staged before and not mentioned here stay pending.

        All or nothing: if the result would break a record invariant,
        :class:`ProfileInvariantError` is raised and neither the profile
        nor the diff is touched.
        """
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile field(s): {sorted(unknown)}")
        dataclasses.replace(self.profile, **changes).validate()

        for name, value in changes.items():
            setattr(self.profile, name, value)
        pending = dict(self.pending_changes or {})
        pending.update(changes)
        self.pending_changes = pending
        self.dirty = True
