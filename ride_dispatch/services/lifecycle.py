"""
RideLifecycle -- sole owner of ``rides.status``.

  PENDING -> ACCEPTED -> IN_PROGRESS -> COMPLETED
      \\          \\
       +-> CANCELLED

Every transition is a compare-and-set on the ride row, so two writers
racing on one ride (driver accepting, rider cancelling, the sweep timing
it out) resolve in the database: one update matches, the others see a
status they cannot move from.  ``PENDING -> ACCEPTED`` is only reachable
through ``assign_driver``, which AcceptanceQueue calls from inside its
own transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.clock import as_utc, utcnow
from ride_dispatch.domain.entities import Ride, RideRequest, ensure_ride_transition
from ride_dispatch.domain.enums import (
    CancellationReason,
    QueueStatus,
    RideStatus,
    RideTiming,
)
from ride_dispatch.domain.events import QueueEntryChanged, RideStatusChanged
from ride_dispatch.domain.exceptions import (
    InvalidTransition,
    NoDriverAvailable,
    RideNotFound,
)
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.models import RideModel
from ride_dispatch.infrastructure.repositories import (
    PresenceRepository,
    QueueEntryRepository,
    RideRepository,
    ride_snapshot,
)

from .presence import PresenceStore

if TYPE_CHECKING:
    from .matcher import DispatchMatcher

logger = logging.getLogger(__name__)


def ride_event(
    row: RideModel,
    previous: Optional[RideStatus] = None,
    driver_id: Optional[int] = None,
) -> RideStatusChanged:
    return RideStatusChanged(
        ride_id=row.id,
        rider_id=row.rider_id,
        status=RideStatus(row.status),
        previous_status=previous,
        driver_id=driver_id if driver_id is not None else row.driver_id,
        reason=row.cancellation_reason,
        version=row.version,
    )


class RideLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: NotificationBroadcaster,
        presence: PresenceStore,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.presence = presence
        self.settings = settings

    # ── Creation and reads ────────────────────────────────────────

    async def submit(self, request: RideRequest) -> Ride:
        """Create a ``pending`` ride.  A repeated idempotency key returns the original."""
        async with self.session_factory() as session:
            async with session.begin():
                repo = RideRepository(session)
                if request.idempotency_key:
                    existing = await repo.get_by_idempotency_key(request.idempotency_key)
                    if existing:
                        return ride_snapshot(existing)

                row = await repo.create(
                    RideModel(
                        rider_id=request.rider_id,
                        pickup_lat=request.pickup.lat,
                        pickup_lng=request.pickup.lng,
                        dropoff_lat=request.dropoff.lat,
                        dropoff_lng=request.dropoff.lng,
                        timing=request.timing,
                        scheduled_at=request.scheduled_at,
                        estimated_cost=request.estimated_cost,
                        idempotency_key=request.idempotency_key,
                        status=RideStatus.PENDING,
                        match_attempts=0,
                        version=1,
                        created_at=utcnow(),
                    )
                )
                event = ride_event(row)
            ride = ride_snapshot(row)

        logger.info("Ride %s submitted (%s)", ride.id, ride.timing.value)
        await self.broadcaster.publish(event)
        return ride

    async def get(self, ride_id: int) -> Ride:
        async with self.session_factory() as session:
            row = await RideRepository(session).get_by_id(ride_id)
            if row is None:
                raise RideNotFound(f"Ride {ride_id} not found")
            return ride_snapshot(row)

    async def pending(self) -> list[Ride]:
        async with self.session_factory() as session:
            rows = await RideRepository(session).get_pending()
            return [ride_snapshot(r) for r in rows]

    async def pending_without_active_entries(self) -> list[Ride]:
        async with self.session_factory() as session:
            rows = await RideRepository(session).get_pending_without_active_entries()
            return [ride_snapshot(r) for r in rows]

    # ── Assignment (called by AcceptanceQueue) ────────────────────

    async def assign_driver(
        self, session: AsyncSession, ride: RideModel, driver_id: int
    ) -> Optional[int]:
        """
        ``pending -> accepted`` for ``driver_id``, inside the caller's transaction.

        Succeeds only while the ride is pending, the driver still holds an
        open entry and, for instant rides, is not already on another live
        instant ride.  Returns the new ride version, or ``None`` if any of
        those no longer held when the row was updated.
        """
        if RideStatus(ride.status) is not RideStatus.PENDING:
            return None
        repo = RideRepository(session)
        conditions = [QueueEntryRepository.is_active(ride.id, driver_id)]
        if RideTiming(ride.timing) is RideTiming.INSTANT:
            # Accepts by one driver queue on its presence row, so the check
            # below sees any instant ride this driver took in the meantime.
            await PresenceRepository(session).get(driver_id, for_update=True)
            conditions.append(~repo.driver_has_active_instant_ride(driver_id, ride.id))
        return await repo.compare_and_set(
            ride.id,
            [RideStatus.PENDING],
            *conditions,
            status=RideStatus.ACCEPTED,
            driver_id=driver_id,
            accepted_at=utcnow(),
        )

    # ── Execution signals ─────────────────────────────────────────

    async def start_trip(self, ride_id: int, driver_id: int) -> Ride:
        return await self._advance(
            ride_id, driver_id, RideStatus.ACCEPTED, RideStatus.IN_PROGRESS,
            started_at=utcnow(),
        )

    async def complete(self, ride_id: int, driver_id: int) -> Ride:
        return await self._advance(
            ride_id, driver_id, RideStatus.IN_PROGRESS, RideStatus.COMPLETED,
            completed_at=utcnow(),
        )

    async def _advance(
        self,
        ride_id: int,
        driver_id: int,
        source: RideStatus,
        target: RideStatus,
        **values,
    ) -> Ride:
        events = []
        async with self.session_factory() as session:
            async with session.begin():
                repo = RideRepository(session)
                version = await repo.compare_and_set(
                    ride_id,
                    [source],
                    RideModel.driver_id == driver_id,
                    status=target,
                    **values,
                )
                row = await repo.get_by_id(ride_id, fresh=True)
                if row is None:
                    raise RideNotFound(f"Ride {ride_id} not found")
                if version is None:
                    if row.driver_id != driver_id:
                        raise InvalidTransition(
                            f"Driver {driver_id} is not assigned to ride {ride_id}"
                        )
                    ensure_ride_transition(RideStatus(row.status), target)
                    raise InvalidTransition(
                        f"Ride {ride_id} is {RideStatus(row.status).value}, "
                        f"expected {source.value}"
                    )
                if target is RideStatus.COMPLETED:
                    released = await self.presence.release(session, driver_id, ride_id)
                    if released:
                        events.append(released)
                events.insert(0, ride_event(row, previous=source))
            ride = ride_snapshot(row)

        logger.info("Ride %s %s -> %s", ride_id, source.value, target.value)
        await self.broadcaster.publish(*events)
        return ride

    # ── Cancellation ──────────────────────────────────────────────

    async def cancel(
        self,
        ride_id: int,
        reason: CancellationReason = CancellationReason.RIDER_CANCELLED,
        *,
        expected_status: Optional[RideStatus] = None,
    ) -> Ride:
        """
        Cancel a ``pending`` or ``accepted`` ride.

        Open queue entries are expired and an assigned driver is released
        in the same transaction.  ``expected_status`` narrows the allowed
        source: a rider cancelling what it saw as a pending ride must not
        cancel a ride a driver accepted in the meantime.
        """
        sources = [RideStatus.PENDING, RideStatus.ACCEPTED]
        if expected_status is not None:
            sources = [s for s in sources if s is expected_status]

        async with self.session_factory() as session:
            async with session.begin():
                repo = RideRepository(session)
                row = await repo.get_by_id(ride_id, for_update=True)
                if row is None:
                    raise RideNotFound(f"Ride {ride_id} not found")
                previous = RideStatus(row.status)
                previous_driver = row.driver_id
                ensure_ride_transition(previous, RideStatus.CANCELLED)
                if previous not in sources:
                    raise InvalidTransition(
                        f"Ride {ride_id} is {previous.value}, "
                        f"expected {expected_status.value if expected_status else 'pending/accepted'}"
                    )

                version = await repo.compare_and_set(
                    ride_id,
                    [previous],
                    status=RideStatus.CANCELLED,
                    driver_id=None,
                    cancelled_at=utcnow(),
                    cancellation_reason=reason.value,
                )
                if version is None:
                    raise InvalidTransition(f"Ride {ride_id} changed while cancelling")

                events: list = []
                expired = await QueueEntryRepository(session).expire_active(ride_id)
                for expired_driver, entry_version in expired:
                    events.append(
                        QueueEntryChanged(
                            ride_id=ride_id,
                            driver_id=expired_driver,
                            status=QueueStatus.EXPIRED,
                            version=entry_version,
                        )
                    )
                if previous_driver is not None:
                    released = await self.presence.release(
                        session, previous_driver, ride_id
                    )
                    if released:
                        events.append(released)

                row = await repo.get_by_id(ride_id, fresh=True)
                events.append(ride_event(row, previous=previous, driver_id=previous_driver))
            ride = ride_snapshot(row)

        logger.info(
            "Ride %s cancelled from %s (%s); %d offers expired",
            ride_id, previous.value, reason.value, len(expired),
        )
        await self.broadcaster.publish(*events)
        return ride

    # ── Timeout policy ────────────────────────────────────────────

    def timeout_deadline(self, ride: Ride) -> datetime:
        """When an unmatched pending ride gives up waiting."""
        deadline = as_utc(ride.created_at) + timedelta(
            seconds=self.settings.pending_ride_timeout_seconds
        )
        if ride.timing.is_scheduled and ride.scheduled_at is not None:
            deadline = max(deadline, as_utc(ride.scheduled_at))
        return deadline

    def rematch_radius(self, ride: Ride) -> float:
        radii = self.settings.rematch_radii_km
        if not radii:
            return self.settings.instant_radius_km
        index = min(max(ride.match_attempts - 1, 0), len(radii) - 1)
        return radii[index]

    async def enforce_pending_timeouts(
        self, matcher: "DispatchMatcher"
    ) -> tuple[list[int], list[int]]:
        """
        Apply the pending-ride policy to rides with no open entries.

        Rides past their deadline are cancelled with ``no_driver_available``;
        the rest are re-matched with a relaxed radius once
        ``rematch_interval_seconds`` have passed since the last attempt.
        Returns ``(rematched_ids, cancelled_ids)``.
        """
        now = utcnow()
        rematch_after = timedelta(seconds=self.settings.rematch_interval_seconds)
        rematched: list[int] = []
        cancelled: list[int] = []

        for ride in await self.pending_without_active_entries():
            deadline = self.timeout_deadline(ride)
            if now >= deadline:
                timeout = NoDriverAvailable(
                    f"Ride {ride.id} found no driver by {deadline.isoformat()}"
                )
                try:
                    await self.cancel(
                        ride.id, timeout.reason, expected_status=RideStatus.PENDING
                    )
                except InvalidTransition:
                    logger.debug("Ride %s left pending before timeout", ride.id)
                    continue
                logger.info("%s", timeout)
                cancelled.append(ride.id)
                continue

            last = as_utc(ride.last_matched_at)
            if last is not None and now - last < rematch_after:
                continue
            result = await matcher.match_and_enqueue(
                ride.id, radius_km=self.rematch_radius(ride)
            )
            if result.candidates:
                rematched.append(ride.id)

        return rematched, cancelled
