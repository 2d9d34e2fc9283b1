"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import copy

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from guildxp.database.models import Base
from guildxp.engine.errors import PersistenceError
from guildxp.engine.profile import ProfileRecord

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the GuildXP tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# In-memory gateway
# ---------------------------------------------------------------------------
class FakeGateway:
    """Dict-backed :class:`PersistenceGateway` that records every call.

    ``rows`` holds column dicts keyed by (guild_id, user_id).  Set
    ``fail_loads`` / ``fail_upserts`` to make the next N calls raise
    :class:`PersistenceError`.  Set ``gate`` to an ``asyncio.Event`` to park
    upserts until the test releases them.
    """

    def __init__(self) -> None:
        self.rows: dict[tuple[int, int], dict] = {}
        self.load_calls: list[tuple[int, int]] = []
        self.upserts: list[tuple[int, int, dict]] = []
        self.fail_loads = 0
        self.fail_upserts = 0
        self.load_delay = 0.0
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def seed(self, record: ProfileRecord) -> None:
        self.rows[record.key] = record.to_columns()

    async def load_profile(self, guild_id, user_id):
        self.load_calls.append((guild_id, user_id))
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.fail_loads:
            self.fail_loads -= 1
            raise PersistenceError("store down", guild_id=guild_id, user_id=user_id)
        row = self.rows.get((guild_id, user_id))
        if row is None:
            return None
        return ProfileRecord.from_columns(guild_id, user_id, copy.deepcopy(row))

    async def upsert_profile(self, guild_id, user_id, columns):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            self.upserts.append((guild_id, user_id, copy.deepcopy(columns)))
            if self.fail_upserts:
                self.fail_upserts -= 1
                raise PersistenceError("store down", guild_id=guild_id, user_id=user_id)
            row = self.rows.setdefault((guild_id, user_id), {})
            row.update(copy.deepcopy(columns))
        finally:
            self.in_flight -= 1


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(gateway, clock):
    from guildxp.engine.cache import ProfileCache

    return ProfileCache(gateway, load_timeout=1.0, flush_timeout=1.0, clock=clock)
