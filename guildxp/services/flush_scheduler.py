"""
guildxp.services.flush_scheduler — Periodic Write-Back of Dirty Profiles
==========================================================================

Sweeps the :class:`~guildxp.engine.cache.ProfileCache` every ``interval``
seconds and flushes each dirty entry.  Entries written less than
``min_write_interval`` seconds ago wait for a later sweep, so a busy
member costs at most one upsert per window.  Brand-new rows are always
eligible.

A failed flush leaves the entry dirty with its diff intact; the next sweep
retries it.  A store outage therefore only grows the dirty set, it never
drops changes or stops the loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from guildxp.engine.cache import ProfileCache

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    """Outcome of one sweep."""

    flushed: int = 0
    failed: int = 0
    skipped: int = 0


class FlushScheduler:
    """Background sweep that persists dirty profiles."""

    def __init__(
        self,
        cache: ProfileCache,
        interval: float = 30.0,
        min_write_interval: float = 5.0,
    ) -> None:
        self.cache = cache
        self.interval = interval
        self.min_write_interval = min_write_interval
        self._task: asyncio.Task | None = None
        self._consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self, *, ignore_min_interval: bool = False) -> SweepResult:
        """Flush every eligible dirty entry once."""
        result = SweepResult()
        now = self.cache.now()
        for guild_id, user_id in self.cache.dirty_keys():
            entry = self.cache.peek(guild_id, user_id)
            if entry is None or not entry.dirty:
                continue
            if (
                not ignore_min_interval
                and not entry.is_new
                and entry.last_wrote_to_db is not None
                and now - entry.last_wrote_to_db < self.min_write_interval
            ):
                result.skipped += 1
                continue
            try:
                ok = await self.cache.flush(guild_id, user_id)
            except Exception:
                # Keep going; the key stays dirty for the next sweep.
                logger.exception("Unexpected error flushing profile %d:%d", guild_id, user_id)
                ok = False
            if ok:
                result.flushed += 1
            else:
                result.failed += 1

        if result.failed:
            self._consecutive_failures += 1
            logger.warning(
                "Profile sweep: %d flushed, %d failed, %d deferred "
                "(%d consecutive sweep(s) with failures)",
                result.flushed, result.failed, result.skipped,
                self._consecutive_failures,
            )
        else:
            self._consecutive_failures = 0
            if result.flushed:
                logger.debug(
                    "Profile sweep: %d flushed, %d deferred",
                    result.flushed, result.skipped,
                )
        return result

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            return

        async def _sweep_loop() -> None:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Profile sweep error")

        self._task = loop.create_task(_sweep_loop(), name="profile-flush")
        logger.info(
            "Profile flush scheduler started (every %.0fs, min write interval %.0fs)",
            self.interval, self.min_write_interval,
        )

    async def stop(self, *, final_flush: bool = True) -> SweepResult | None:
        """Cancel the sweep task and, by default, flush everything once more."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if not final_flush:
            return None
        result = await self.sweep_once(ignore_min_interval=True)
        if result.failed:
            logger.error(
                "Shutdown flush left %d profile(s) unsaved", result.failed,
            )
        else:
            logger.info("Shutdown flush wrote %d profile(s)", result.flushed)
        return result
