"""
guildxp.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- user_guild_profiles — one row per (guild, member) gamification profile

Gold and XP are unbounded integers and are stored as decimal strings;
:mod:`guildxp.engine.profile` converts at the boundary.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all GuildXP ORM models."""


# ---------------------------------------------------------------------------
# UserGuildProfile — per-guild member state
# ---------------------------------------------------------------------------
class UserGuildProfile(Base):
    __tablename__ = "user_guild_profiles"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    xp: Mapped[str] = mapped_column(Text, nullable=False, default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gold: Mapped[str] = mapped_column(Text, nullable=False, default="0")
    streak_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    inventory: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    user_stats: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    achievements: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", name="uq_user_guild_profiles_guild_user"),
        Index("ix_user_guild_profiles_guild_level", "guild_id", "level"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserGuildProfile guild={self.guild_id} user={self.user_id} "
            f"lvl={self.level}>"
        )
