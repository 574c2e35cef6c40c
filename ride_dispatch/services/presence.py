"""
PresenceStore -- the authoritative record of driver online state.

A driver's own client (or the refresh scheduler acting for it) is the
only writer of its row.  Each public operation is one transaction;
``engage`` / ``release`` run inside the caller's transaction so that a
ride assignment and the driver becoming busy commit together.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.entities import Candidate, Coordinates, DriverPresence
from ride_dispatch.domain.enums import TimingClass
from ride_dispatch.domain.events import PresenceChanged
from ride_dispatch.domain.exceptions import NotOnline, PresenceNotFound
from ride_dispatch.domain.matching import cell_for, covering_cells, nearest_first
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.models import DriverPresenceModel
from ride_dispatch.infrastructure.repositories import (
    PresenceRepository,
    presence_snapshot,
)

logger = logging.getLogger(__name__)


def presence_event(row: DriverPresenceModel) -> PresenceChanged:
    return PresenceChanged(
        driver_id=row.driver_id,
        online=row.online,
        available=row.available,
        lat=row.lat,
        lng=row.lng,
        version=row.version,
    )


class PresenceStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: NotificationBroadcaster,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.settings = settings

    # ── Driver-driven mutations ───────────────────────────────────

    async def set_online(self, driver_id: int, point: Coordinates) -> DriverPresence:
        """Mark online and available at ``point``.  Repeating it is a no-op."""
        cell = cell_for(point, self.settings.h3_resolution)
        async with self.session_factory() as session:
            async with session.begin():
                repo = PresenceRepository(session)
                row = await repo.get(driver_id, for_update=True)
                if row is None:
                    row = await repo.add(
                        DriverPresenceModel(
                            driver_id=driver_id,
                            online=False,
                            available=False,
                            version=0,
                            last_updated=utcnow(),
                        )
                    )
                available = row.active_ride_id is None
                if (
                    row.online
                    and row.available == available
                    and row.lat == point.lat
                    and row.lng == point.lng
                ):
                    return presence_snapshot(row)

                row.online = True
                row.available = available
                row.lat, row.lng, row.h3_cell = point.lat, point.lng, cell
                row.last_updated = utcnow()
                row.version += 1
                event = presence_event(row)
            snapshot = presence_snapshot(row)

        logger.info("Driver %s online at (%.5f, %.5f)", driver_id, point.lat, point.lng)
        await self.broadcaster.publish(event)
        return snapshot

    async def set_offline(self, driver_id: int) -> DriverPresence:
        """Mark offline and unavailable.  Coordinates are kept."""
        async with self.session_factory() as session:
            async with session.begin():
                row = await PresenceRepository(session).get(driver_id, for_update=True)
                if row is None:
                    raise PresenceNotFound(f"No presence for driver {driver_id}")
                if not row.online and not row.available:
                    return presence_snapshot(row)
                row.online = False
                row.available = False
                row.last_updated = utcnow()
                row.version += 1
                event = presence_event(row)
            snapshot = presence_snapshot(row)

        logger.info("Driver %s offline", driver_id)
        await self.broadcaster.publish(event)
        return snapshot

    async def update_coordinates(
        self, driver_id: int, point: Coordinates
    ) -> DriverPresence:
        async with self.session_factory() as session:
            async with session.begin():
                row = await PresenceRepository(session).get(driver_id, for_update=True)
                if row is None or not row.online:
                    raise NotOnline(f"Driver {driver_id} is not online")
                row.lat, row.lng = point.lat, point.lng
                row.h3_cell = cell_for(point, self.settings.h3_resolution)
                row.last_updated = utcnow()
                row.version += 1
                event = presence_event(row)
            snapshot = presence_snapshot(row)

        await self.broadcaster.publish(event)
        return snapshot

    async def heartbeat(self, driver_id: int) -> None:
        """
        Record that the driver's refresh is still running.

        Used when a tick produced no coordinate write (sample failed or
        throttled).  Keeps the driver clear of ``expire_stale`` without
        changing its position or version, so nothing is published.
        """
        async with self.session_factory() as session:
            async with session.begin():
                if not await PresenceRepository(session).touch(driver_id, utcnow()):
                    raise NotOnline(f"Driver {driver_id} is not online")

    # ── Queries ───────────────────────────────────────────────────

    async def get(self, driver_id: int) -> DriverPresence:
        async with self.session_factory() as session:
            row = await PresenceRepository(session).get(driver_id)
            if row is None:
                raise PresenceNotFound(f"No presence for driver {driver_id}")
            return presence_snapshot(row)

    async def list_available_within(
        self,
        center: Coordinates,
        radius_km: float,
        timing_class: TimingClass = TimingClass.NEAR_TERM,
        *,
        session: Optional[AsyncSession] = None,
    ) -> list[Candidate]:
        """
        Available drivers ranked by distance to ``center``.

        Near-term requests are limited to ``radius_km``; scheduled requests
        see every available driver.
        """
        if session is None:
            async with self.session_factory() as own_session:
                return await self.list_available_within(
                    center, radius_km, timing_class, session=own_session
                )

        repo = PresenceRepository(session)
        if timing_class is TimingClass.NEAR_TERM:
            cells = covering_cells(center, radius_km, self.settings.h3_resolution)
            rows = await repo.list_available(cells)
            limit: Optional[float] = radius_km
        else:
            rows = await repo.list_available()
            limit = None
        return nearest_first(
            center,
            [(r.driver_id, Coordinates(r.lat, r.lng)) for r in rows],
            radius_km=limit,
        )

    # ── Maintenance ───────────────────────────────────────────────

    async def expire_stale(self) -> list[int]:
        """Take drivers offline whose last refresh is older than the horizon."""
        cutoff = utcnow() - timedelta(seconds=self.settings.presence_stale_after_seconds)
        events = []
        async with self.session_factory() as session:
            async with session.begin():
                for row in await PresenceRepository(session).get_stale_online(cutoff):
                    row.online = False
                    row.available = False
                    row.version += 1
                    events.append(presence_event(row))

        if events:
            logger.info("Expired %d stale driver presences", len(events))
            await self.broadcaster.publish(*events)
        return [e.driver_id for e in events]

    # ── In-transaction helpers (used by queue and lifecycle) ──────

    async def engage(
        self, session: AsyncSession, driver_id: int, ride_id: int
    ) -> Optional[PresenceChanged]:
        """Make the driver busy with ``ride_id``.  Caller owns the transaction."""
        row = await PresenceRepository(session).get(driver_id, for_update=True)
        if row is None:
            return None
        row.active_ride_id = ride_id
        row.available = False
        row.version += 1
        return presence_event(row)

    async def release(
        self, session: AsyncSession, driver_id: int, ride_id: int
    ) -> Optional[PresenceChanged]:
        """Free the driver if it is still engaged on ``ride_id``."""
        row = await PresenceRepository(session).get(driver_id, for_update=True)
        if row is None or row.active_ride_id != ride_id:
            return None
        row.active_ride_id = None
        row.available = row.online
        row.version += 1
        return presence_event(row)
