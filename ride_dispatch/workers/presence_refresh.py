"""
Presence Refresh Scheduler
==========================

One asyncio task per online driver.  Every
``presence_refresh_interval_seconds`` (default 30 s) the task samples
the driver's location and republishes it through
``PresenceStore.update_coordinates``.

* ``stop(driver_id)`` wakes the task immediately; no further update is
  issued once it returns.
* A failed sample (``LocationUnavailable``) keeps the previous
  coordinates and the driver stays online.  The tick is logged and
  recorded as a heartbeat, so the stale-presence sweep only catches
  drivers whose refresh stopped running.
* ``NotOnline`` means the driver went offline through another path; the
  task ends itself.
* A write is skipped when the previous one is younger than
  ``presence_min_write_interval_seconds`` and the driver moved less than
  ``presence_min_move_meters``.  The clock starts at the last write, so
  the throttle only bites when ticks come faster than
  ``presence_min_write_interval_seconds``; with the defaults (30 s ticks,
  20 s minimum) every tick writes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from ride_dispatch.config import Settings
from ride_dispatch.domain.distance import distance_km
from ride_dispatch.domain.entities import Coordinates
from ride_dispatch.domain.exceptions import LocationUnavailable, NotOnline
from ride_dispatch.infrastructure.location_source import LocationSource
from ride_dispatch.services.presence import PresenceStore

logger = logging.getLogger(__name__)


class _Refresher:
    def __init__(self, driver_id: int):
        self.driver_id = driver_id
        self.stop_event = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.last_point: Optional[Coordinates] = None
        self.last_write: Optional[float] = None


class PresenceRefreshScheduler:
    def __init__(
        self,
        presence: PresenceStore,
        source: LocationSource,
        settings: Settings,
    ):
        self.presence = presence
        self.source = source
        self.settings = settings
        self._refreshers: dict[int, _Refresher] = {}

    # ── Public API ────────────────────────────────────────────────

    def is_running(self, driver_id: int) -> bool:
        refresher = self._refreshers.get(driver_id)
        return bool(refresher and refresher.task and not refresher.task.done())

    def start(
        self, driver_id: int, initial: Optional[Coordinates] = None
    ) -> None:
        """Begin refreshing ``driver_id``.  Already running is a no-op."""
        if self.is_running(driver_id):
            return
        refresher = _Refresher(driver_id)
        if initial is not None:
            refresher.last_point = initial
            refresher.last_write = time.monotonic()
        refresher.task = asyncio.create_task(self._loop(refresher))
        self._refreshers[driver_id] = refresher
        logger.info(
            "Presence refresh started for driver %s (interval=%ss)",
            driver_id, self.settings.presence_refresh_interval_seconds,
        )

    async def stop(self, driver_id: int) -> None:
        refresher = self._refreshers.pop(driver_id, None)
        if refresher is None:
            return
        refresher.stop_event.set()
        if refresher.task:
            refresher.task.cancel()
            try:
                await refresher.task
            except asyncio.CancelledError:
                pass
        logger.info("Presence refresh stopped for driver %s", driver_id)

    async def stop_all(self) -> None:
        for driver_id in list(self._refreshers):
            await self.stop(driver_id)

    # ── Internals ─────────────────────────────────────────────────

    async def _loop(self, refresher: _Refresher) -> None:
        interval = self.settings.presence_refresh_interval_seconds
        while not refresher.stop_event.is_set():
            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(refresher.stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.refresh_once(refresher)
            except NotOnline:
                logger.info(
                    "Driver %s no longer online; refresh ends", refresher.driver_id
                )
                self._refreshers.pop(refresher.driver_id, None)
                return
            except Exception:
                logger.exception(
                    "Unhandled error refreshing driver %s", refresher.driver_id
                )

    async def refresh_once(self, refresher: _Refresher) -> bool:
        """
        Take one sample and write it.  Returns True if a write happened.

        A tick without a coordinate write still records a heartbeat, so a
        driver whose device stopped reporting stays online for as long as
        its refresh keeps running.
        """
        try:
            point = await self.source.sample(refresher.driver_id)
        except LocationUnavailable as exc:
            logger.warning(
                "Location unavailable for driver %s; keeping last position (%s)",
                refresher.driver_id, exc,
            )
            await self._heartbeat(refresher)
            return False

        now = time.monotonic()
        if refresher.last_point is not None and refresher.last_write is not None:
            moved_m = distance_km(refresher.last_point, point) * 1000
            too_soon = (
                now - refresher.last_write
                < self.settings.presence_min_write_interval_seconds
            )
            if too_soon and moved_m < self.settings.presence_min_move_meters:
                await self._heartbeat(refresher)
                return False

        if refresher.stop_event.is_set():
            return False
        await self.presence.update_coordinates(refresher.driver_id, point)
        refresher.last_point = point
        refresher.last_write = now
        return True

    async def _heartbeat(self, refresher: _Refresher) -> None:
        if not refresher.stop_event.is_set():
            await self.presence.heartbeat(refresher.driver_id)
