"""
guildxp.database.engine — Database Connection & Async Helper
==============================================================

SQLAlchemy + psycopg2 is synchronous, and the bot lives on an ``asyncio``
event loop.  Every DB call therefore goes through :func:`run_db`, which
ships the synchronous function to the default thread pool so the loop
never blocks::

    row = await run_db(load_row, engine, guild_id, user_id)

Usage::

    from guildxp.database.engine import create_db_engine, init_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # no-op once Alembic owns the schema
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, inspect, text
from sqlalchemy.orm import Session

from guildxp.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

ALEMBIC_VERSION_TABLE = "alembic_version"


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine`, by default from ``DATABASE_URL``.

    Pool sizing suits one bot process that flushes in the background:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> bool:
    """Create the profile tables on a database Alembic has never touched.

    Production databases are migrated with ``alembic upgrade head``; once
    an ``alembic_version`` table exists this function leaves the schema
    alone and only logs the revision.  Fresh dev/test databases (no
    ``alembic_version``) get the tables from :mod:`guildxp.database.models`.

    Returns ``True`` when tables were created.
    """
    if inspect(engine).has_table(ALEMBIC_VERSION_TABLE):
        with engine.connect() as conn:
            revision = conn.execute(
                text(f"SELECT version_num FROM {ALEMBIC_VERSION_TABLE}")
            ).scalar()
        logger.info("Schema managed by Alembic (revision %s); skipping create_all.", revision)
        return False

    Base.metadata.create_all(engine)
    logger.info("No Alembic revision found; created profile tables directly.")
    return True


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back
    on exception."""
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Thin wrapper over :func:`asyncio.to_thread`.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
