"""
guildxp.services.profile_gateway — SQL Persistence Gateway for Profiles
=========================================================================

Implements the :class:`~guildxp.engine.cache.PersistenceGateway` contract
over the ``user_guild_profiles`` table.

The row functions are synchronous and run on a worker thread via
:func:`~guildxp.database.engine.run_db`.  Any ``SQLAlchemyError`` is
re-raised as :class:`~guildxp.engine.errors.PersistenceError` so the cache
only has to know one failure type.

The upsert is keyed by ``(guild_id, user_id)`` and writes absolute column
values, so replaying the same diff after a failed or timed-out attempt is
harmless.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from guildxp.database.engine import get_session, run_db
from guildxp.database.models import UserGuildProfile
from guildxp.engine.errors import PersistenceError
from guildxp.engine.profile import PROFILE_FIELDS, ProfileRecord

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_COLUMNS: frozenset[str] = frozenset(PROFILE_FIELDS)


def _select_row(guild_id: int, user_id: int):
    return select(UserGuildProfile).where(
        UserGuildProfile.guild_id == guild_id,
        UserGuildProfile.user_id == user_id,
    )


def load_profile_row(engine: Engine, guild_id: int, user_id: int) -> ProfileRecord | None:
    """Read one profile row, or ``None`` if the pair has none yet."""
    with get_session(engine) as session:
        row = session.scalar(_select_row(guild_id, user_id))
        if row is None:
            return None
        return ProfileRecord.from_columns(
            guild_id, user_id, {name: getattr(row, name) for name in PROFILE_FIELDS},
        )


def upsert_profile_row(
    engine: Engine, guild_id: int, user_id: int, columns: dict[str, Any],
) -> None:
    """Insert the row if missing, then apply *columns* to it."""
    unknown = set(columns) - _COLUMNS
    if unknown:
        raise ValueError(f"Unknown profile column(s): {sorted(unknown)}")

    with get_session(engine) as session:
        row = session.scalar(_select_row(guild_id, user_id).with_for_update())
        if row is None:
            session.add(UserGuildProfile(guild_id=guild_id, user_id=user_id, **columns))
        else:
            for name, value in columns.items():
                setattr(row, name, value)


class SqlProfileGateway:
    """Async :class:`PersistenceGateway` backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def load_profile(self, guild_id: int, user_id: int) -> ProfileRecord | None:
        try:
            return await run_db(load_profile_row, self.engine, guild_id, user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to load profile {guild_id}:{user_id}: {exc}",
                guild_id=guild_id, user_id=user_id,
            ) from exc

    async def upsert_profile(
        self, guild_id: int, user_id: int, columns: dict[str, Any],
    ) -> None:
        try:
            await run_db(upsert_profile_row, self.engine, guild_id, user_id, columns)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to write profile {guild_id}:{user_id}: {exc}",
                guild_id=guild_id, user_id=user_id,
            ) from exc
        logger.debug(
            "Upserted profile %d:%d (%s)",
            guild_id, user_id, ", ".join(sorted(columns)),
        )
