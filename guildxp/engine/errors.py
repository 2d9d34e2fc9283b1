"""
guildxp.engine.errors — Profile Layer Exceptions
==================================================

Small hierarchy shared by the cache, the gateway, and the domain helpers.

* :class:`PersistenceError` — the backing store failed (I/O, timeout).
  Load failures propagate to the caller; flush failures are logged and
  retried.
* :class:`ProfileInvariantError` — a mutation would leave a profile in a
  state that must never be stored (negative gold, zero-quantity stack, …).
* :class:`InsufficientFundsError` — the caller-level "enough gold?" check.

A profile that is absent from the store is *not* an error: the cache
creates a fresh zero-valued record instead.
"""

from __future__ import annotations

__all__ = [
    "GuildXPError",
    "InsufficientFundsError",
    "PersistenceError",
    "ProfileInvariantError",
]


class GuildXPError(Exception):
    """Base class for all GuildXP errors."""


class PersistenceError(GuildXPError):
    """Loading or writing a profile through the gateway failed."""

    def __init__(
        self,
        message: str,
        *,
        guild_id: int | None = None,
        user_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.guild_id = guild_id
        self.user_id = user_id


class ProfileInvariantError(GuildXPError, ValueError):
    """A profile mutation would break a record invariant."""


class InsufficientFundsError(ProfileInvariantError):
    """Spending more gold than the profile holds."""

    def __init__(self, balance: int, requested: int) -> None:
        super().__init__(
            f"Insufficient gold: balance {balance}, requested {requested}"
        )
        self.balance = balance
        self.requested = requested
