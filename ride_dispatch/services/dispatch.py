"""
DispatchService -- the inbound boundary of the dispatch core.

The surrounding application (HTTP routes, websocket handlers, jobs)
talks to this facade only.  Callers pass identifiers and get immutable
snapshots back; nothing here hands out ORM rows or shared collections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.entities import (
    AcceptResult,
    Coordinates,
    DriverPresence,
    MatchResult,
    QueueEntry,
    Ride,
    RideRequest,
)
from ride_dispatch.domain.enums import CancellationReason, RideStatus
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.location_source import (
    LocationSource,
    RedisLocationSource,
)
from ride_dispatch.workers.presence_refresh import PresenceRefreshScheduler

from .lifecycle import RideLifecycle
from .matcher import DispatchMatcher
from .presence import PresenceStore
from .queue import AcceptanceQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submission:
    ride: Ride
    match: MatchResult


class DispatchService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: NotificationBroadcaster,
        settings: Settings,
        location_source: LocationSource,
    ):
        self.settings = settings
        self.broadcaster = broadcaster
        self.location_source = location_source
        self.presence = PresenceStore(session_factory, broadcaster, settings)
        self.lifecycle = RideLifecycle(
            session_factory, broadcaster, self.presence, settings
        )
        self.matcher = DispatchMatcher(
            session_factory, broadcaster, self.presence, settings
        )
        self.queue = AcceptanceQueue(
            session_factory, broadcaster, self.lifecycle, self.presence
        )
        self.scheduler = PresenceRefreshScheduler(
            self.presence, location_source, settings
        )

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        settings: Settings,
    ) -> "DispatchService":
        """Wire the production collaborators around one Redis client."""
        return cls(
            session_factory,
            NotificationBroadcaster(redis),
            settings,
            RedisLocationSource(redis, settings.location_sample_ttl_seconds),
        )

    # ── Riders ────────────────────────────────────────────────────

    async def submit_ride_request(self, request: RideRequest) -> Submission:
        ride = await self.lifecycle.submit(request)
        if ride.status is not RideStatus.PENDING or ride.match_attempts:
            # Idempotent resubmission: matching already ran for this ride.
            return Submission(ride=ride, match=MatchResult(ride_id=ride.id))
        match = await self.matcher.match_and_enqueue(ride.id)
        return Submission(ride=await self.lifecycle.get(ride.id), match=match)

    async def cancel_ride(
        self, ride_id: int, expected_status: RideStatus | None = None
    ) -> Ride:
        return await self.lifecycle.cancel(
            ride_id,
            CancellationReason.RIDER_CANCELLED,
            expected_status=expected_status,
        )

    async def get_ride(self, ride_id: int) -> Ride:
        return await self.lifecycle.get(ride_id)

    async def pending_rides(self) -> list[Ride]:
        return await self.lifecycle.pending()

    async def ride_queue(self, ride_id: int) -> list[QueueEntry]:
        await self.lifecycle.get(ride_id)
        return await self.queue.entries_for_ride(ride_id)

    # ── Drivers: presence ─────────────────────────────────────────

    async def driver_go_online(
        self, driver_id: int, point: Coordinates
    ) -> DriverPresence:
        presence = await self.presence.set_online(driver_id, point)
        self.scheduler.start(driver_id, initial=point)
        return presence

    async def driver_go_offline(self, driver_id: int) -> DriverPresence:
        await self.scheduler.stop(driver_id)
        return await self.presence.set_offline(driver_id)

    async def report_location_sample(self, driver_id: int, point: Coordinates) -> None:
        """Store a raw device fix for the refresh scheduler to pick up."""
        await self.location_source.record(driver_id, point)

    async def get_presence(self, driver_id: int) -> DriverPresence:
        return await self.presence.get(driver_id)

    # ── Drivers: queue actions ────────────────────────────────────

    async def express_interest(self, ride_id: int, driver_id: int) -> QueueEntry:
        return await self.queue.express_interest(ride_id, driver_id)

    async def decline(self, ride_id: int, driver_id: int) -> QueueEntry:
        return await self.queue.decline(ride_id, driver_id)

    async def accept(self, ride_id: int, driver_id: int) -> AcceptResult:
        return await self.queue.accept(ride_id, driver_id)

    async def open_offers(self, driver_id: int) -> list[QueueEntry]:
        return await self.queue.open_offers_for_driver(driver_id)

    # ── Drivers: execution signals ────────────────────────────────

    async def start_trip(self, ride_id: int, driver_id: int) -> Ride:
        return await self.lifecycle.start_trip(ride_id, driver_id)

    async def complete_ride(self, ride_id: int, driver_id: int) -> Ride:
        return await self.lifecycle.complete(ride_id, driver_id)

    async def shutdown(self) -> None:
        await self.scheduler.stop_all()
