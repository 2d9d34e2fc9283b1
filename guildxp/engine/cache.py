"""
guildxp.engine.cache — Guild-Scoped Profile Cache with Write Coalescing
=========================================================================

One process-wide :class:`ProfileCache` maps ``(guild_id, user_id)`` to a
:class:`~guildxp.engine.profile.ProfileCacheEntry`.  Handlers read the
entry, mutate it, and hand it back with :meth:`ProfileCache.set`; the
database only sees the accumulated per-field diff when the entry is
flushed (by the :class:`~guildxp.services.flush_scheduler.FlushScheduler`
or an explicit :meth:`ProfileCache.flush`).

Guarantees:

* A miss loads through the gateway once, even when several handlers miss
  on the same key at the same time.  A failed or timed-out load raises
  :class:`PersistenceError` and caches nothing.
* ``set`` folds the previously pending fields into the incoming entry, so
  two writers touching different fields never drop each other's diff.
* At most one upsert per key is in flight.  A second ``flush`` waits for
  the first and then finds nothing left to do (unless new changes landed).
* A failed flush leaves the diff untouched for the next attempt.

Usage::

    cache = ProfileCache(SqlProfileGateway(engine))

    async with cache.editing(guild_id, user_id) as entry:
        entry.stage(gold=entry.profile.gold + 50)

    await cache.flush(guild_id, user_id)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Protocol

from guildxp.engine.errors import PersistenceError, ProfileInvariantError
from guildxp.engine.profile import (
    PROFILE_FIELDS,
    ProfileCacheEntry,
    ProfileKey,
    ProfileRecord,
    profile_key,
    serialize_field,
)

logger = logging.getLogger(__name__)

__all__ = ["PersistenceGateway", "ProfileCache"]


class PersistenceGateway(Protocol):
    """What the cache needs from the backing store.

    Both methods raise :class:`PersistenceError` on I/O failure.
    ``upsert_profile`` receives column values (see
    :meth:`ProfileRecord.to_columns`) and must be safe to repeat with the
    same values.
    """

    async def load_profile(self, guild_id: int, user_id: int) -> ProfileRecord | None:
        ...

    async def upsert_profile(
        self, guild_id: int, user_id: int, columns: dict[str, Any],
    ) -> None:
        ...


class ProfileCache:
    """In-memory profile store with deferred, coalesced persistence.

    Parameters
    ----------
    gateway:
        The :class:`PersistenceGateway` used on miss and on flush.
    load_timeout, flush_timeout:
        Seconds before a gateway call is abandoned (``None`` = no limit).
    clock:
        Source of "now" in epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        load_timeout: float | None = 10.0,
        flush_timeout: float | None = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self.load_timeout = load_timeout
        self.flush_timeout = flush_timeout
        self._clock = clock

        self._entries: dict[ProfileKey, ProfileCacheEntry] = {}
        # key → in-flight load shared by concurrent misses
        self._loading: dict[ProfileKey, asyncio.Task[ProfileCacheEntry]] = {}
        # key → mutation lock (see editing())
        self._locks: dict[ProfileKey, asyncio.Lock] = {}
        # key → flush lock (single writer per key)
        self._flush_locks: dict[ProfileKey, asyncio.Lock] = {}

    # -------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def now(self) -> float:
        return self._clock()

    def peek(self, guild_id: int, user_id: int) -> ProfileCacheEntry | None:
        """Return the cached entry without loading on miss."""
        return self._entries.get(profile_key(guild_id, user_id))

    def dirty_keys(self) -> list[ProfileKey]:
        return [key for key, entry in self._entries.items() if entry.dirty]

    def stats(self) -> dict[str, int]:
        entries = list(self._entries.values())
        return {
            "entries": len(entries),
            "dirty": sum(1 for e in entries if e.dirty),
            "new": sum(1 for e in entries if e.is_new),
            "loading": len(self._loading),
        }

    # -------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------
    async def get(self, guild_id: int, user_id: int) -> ProfileCacheEntry:
        """Return the live entry for the pair, loading it on a miss.

        Raises
        ------
        PersistenceError
            If the gateway fails or times out.  Nothing is cached.
        """
        key = profile_key(guild_id, user_id)
        entry = self._entries.get(key)
        if entry is not None:
            logger.debug("Profile cache hit %d:%d", guild_id, user_id)
            return entry

        task = self._loading.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._load(key), name=f"profile-load-{guild_id}:{user_id}",
            )
            self._loading[key] = task
            task.add_done_callback(partial(self._load_done, key))
        # One waiter being cancelled must not abort the load for the others.
        return await asyncio.shield(task)

    async def get_or_create_profile(self, *, user_id: int, guild_id: int) -> ProfileCacheEntry:
        """Keyword form of :meth:`get` used by command handlers."""
        return await self.get(guild_id, user_id)

    async def _load(self, key: ProfileKey) -> ProfileCacheEntry:
        guild_id, user_id = key
        try:
            record = await asyncio.wait_for(
                self._gateway.load_profile(guild_id, user_id), self.load_timeout,
            )
        except TimeoutError as exc:
            raise PersistenceError(
                f"Timed out loading profile {guild_id}:{user_id}",
                guild_id=guild_id, user_id=user_id,
            ) from exc

        existing = self._entries.get(key)
        if existing is not None:
            # A set() for this key landed while we were waiting on the store.
            return existing

        now = self._clock()
        if record is None:
            entry = ProfileCacheEntry(
                profile=ProfileRecord(guild_id=guild_id, user_id=user_id),
                dirty=True,
                is_new=True,
                last_loaded=now,
            )
            logger.info("Created new profile %d:%d", guild_id, user_id)
        else:
            entry = ProfileCacheEntry(
                profile=record,
                last_wrote_to_db=now,
                last_loaded=now,
            )
            logger.debug("Loaded profile %d:%d from store", guild_id, user_id)
        self._entries[key] = entry
        return entry

    def _load_done(self, key: ProfileKey, task: asyncio.Task[ProfileCacheEntry]) -> None:
        if self._loading.get(key) is task:
            del self._loading[key]
        if not task.cancelled():
            # Awaiters already received it; mark the exception as retrieved.
            task.exception()

    # -------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------
    def set(self, guild_id: int, user_id: int, entry: ProfileCacheEntry) -> None:
        """Register *entry* as the cached state for the pair.

        If a different entry object is cached, every field *entry* did not
        stage is taken from the cached profile, and the cached pending
        fields are folded into the diff; for a field *entry* staged, the
        incoming value wins.

        Raises
        ------
        ProfileInvariantError
            If the resulting profile breaks a record invariant.  The
            entry is not registered.
        ValueError
            If *entry* belongs to a different (guild, user) pair.
        """
        key = profile_key(guild_id, user_id)
        if entry.key != key:
            raise ValueError(
                f"Entry for {entry.key[0]}:{entry.key[1]} cannot be stored "
                f"under {guild_id}:{user_id}"
            )

        current = self._entries.get(key)
        if current is not None and current is not entry:
            self._fold(current, entry)

        entry.profile.validate()

        if not entry.pending_changes:
            entry.pending_changes = None
        entry.dirty = entry.owes_flush()
        entry.version = max(entry.version, current.version if current else 0) + 1
        entry.last_loaded = self._clock()
        self._entries[key] = entry

    def _fold(self, current: ProfileCacheEntry, incoming: ProfileCacheEntry) -> None:
        """Make *incoming* own only the fields it staged.

        Every other field is taken from the cached profile, pending or
        already flushed, so a stale copy can neither drop another writer's
        diff nor roll back a value the store already holds.
        """
        guild_id, user_id = current.key
        incoming_pending = incoming.pending_changes or {}
        overwritten = []
        for name in PROFILE_FIELDS:
            if name in incoming_pending:
                continue
            value = getattr(current.profile, name)
            if getattr(incoming.profile, name) != value:
                overwritten.append(name)
                setattr(incoming.profile, name, value)

        if incoming.version < current.version:
            logger.warning(
                "Profile %d:%d written from a stale copy (v%d < v%d); "
                "kept cached value for %s",
                guild_id, user_id, incoming.version, current.version,
                ", ".join(overwritten) or "no fields",
            )

        carried = {
            name: value
            for name, value in (current.pending_changes or {}).items()
            if name not in incoming_pending
        }
        if carried:
            incoming.pending_changes = {**carried, **incoming_pending}

        # The cache knows whether the row exists yet.
        incoming.is_new = current.is_new
        if current.last_wrote_to_db is not None and (
            incoming.last_wrote_to_db is None
            or incoming.last_wrote_to_db < current.last_wrote_to_db
        ):
            incoming.last_wrote_to_db = current.last_wrote_to_db

    def lock(self, guild_id: int, user_id: int) -> asyncio.Lock:
        """Return the mutation lock for the pair."""
        key = profile_key(guild_id, user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def editing(self, guild_id: int, user_id: int) -> AsyncIterator[ProfileCacheEntry]:
        """Atomic read-modify-write for one pair.

        Holds the pair's mutation lock across ``get`` → body → ``set``.
        If the body raises, ``set`` is skipped.
        """
        async with self.lock(guild_id, user_id):
            entry = await self.get(guild_id, user_id)
            yield entry
            self.set(guild_id, user_id, entry)

    # -------------------------------------------------------------------
    # Flush path
    # -------------------------------------------------------------------
    def _flush_lock(self, key: ProfileKey) -> asyncio.Lock:
        lock = self._flush_locks.get(key)
        if lock is None:
            lock = self._flush_locks[key] = asyncio.Lock()
        return lock

    async def flush(self, guild_id: int, user_id: int) -> bool:
        """Write the pair's pending diff to the store.

        Returns ``True`` when the entry is clean afterwards (or was already
        clean, in which case the gateway is not called) and ``False`` when
        the write failed; a failed write leaves the diff in place.
        """
        key = profile_key(guild_id, user_id)
        async with self._flush_lock(key):
            entry = self._entries.get(key)
            if entry is None or not entry.dirty:
                return True
            if not entry.owes_flush():
                entry.dirty = False
                return True

            try:
                entry.profile.validate()
            except ProfileInvariantError:
                logger.error(
                    "Refusing to flush invalid profile %d:%d",
                    guild_id, user_id, exc_info=True,
                )
                return False

            was_new = entry.is_new
            sent = copy.deepcopy(entry.pending_changes or {})
            if was_new:
                columns = entry.profile.to_columns()
            else:
                columns = {name: serialize_field(name, value) for name, value in sent.items()}

            try:
                await asyncio.wait_for(
                    self._gateway.upsert_profile(guild_id, user_id, columns),
                    self.flush_timeout,
                )
            except TimeoutError:
                logger.warning(
                    "Timed out flushing profile %d:%d (%d fields); will retry",
                    guild_id, user_id, len(columns),
                )
                return False
            except PersistenceError:
                logger.warning(
                    "Failed to flush profile %d:%d (%d fields); will retry",
                    guild_id, user_id, len(columns), exc_info=True,
                )
                return False

            self._settle(key, sent, was_new)
            logger.debug(
                "Flushed profile %d:%d (%s)",
                guild_id, user_id, "insert" if was_new else ", ".join(sorted(columns)),
            )
            return True

    def _settle(self, key: ProfileKey, sent: dict[str, Any], was_new: bool) -> None:
        """Clear what the store now holds; keep anything changed mid-flight."""
        entry = self._entries.get(key)
        if entry is None:
            return
        pending = dict(entry.pending_changes or {})
        for name, value in sent.items():
            if name in pending and pending[name] == value:
                del pending[name]
        entry.pending_changes = pending or None
        if was_new:
            entry.is_new = False
        entry.last_wrote_to_db = self._clock()
        entry.dirty = entry.owes_flush()
        if entry.dirty:
            logger.debug(
                "Profile %d:%d changed during flush; %d field(s) still pending",
                key[0], key[1], len(pending),
            )

    # -------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------
    async def prune(self, max_idle: float) -> int:
        """Evict entries untouched for *max_idle* seconds.

        Dirty entries are flushed first and kept if the flush fails.
        Entries whose mutation lock is held are skipped.  Returns the
        number of evicted entries.
        """
        cutoff = self._clock() - max_idle
        evicted = 0
        for key, entry in list(self._entries.items()):
            if entry.last_loaded > cutoff:
                continue
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            if entry.dirty and not await self.flush(*key):
                continue

            current = self._entries.get(key)
            if current is not entry or current.dirty or current.last_loaded > cutoff:
                continue
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue

            del self._entries[key]
            self._locks.pop(key, None)
            flush_lock = self._flush_locks.get(key)
            if flush_lock is not None and not flush_lock.locked():
                del self._flush_locks[key]
            evicted += 1

        if evicted:
            logger.info("Evicted %d idle profile(s); %d cached", evicted, len(self._entries))
        return evicted
