"""
AcceptanceQueue -- per-ride candidacies and the at-most-one-winner rule.

Entry state machine::

    viewing -> interested -> accepted
       |           |
       +-----------+-> declined
       +-----------+-> expired   (sweep only)

``accepted``, ``declined`` and ``expired`` are terminal.

Commitment
----------
``accept`` runs one transaction:

1. compare-and-set the ride ``pending -> accepted`` (RideLifecycle);
   only one caller's UPDATE can match a pending row,
2. mark the winner's entry ``accepted``,
3. sweep sibling ``viewing``/``interested`` entries to ``expired``,
4. for instant rides, engage the driver in PresenceStore.

Events go out after commit, siblings first, so "ride accepted" is never
seen before the entries that lost are closed.  Losing the race is a
normal ``AcceptResult``, not an exception.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.entities import (
    AcceptResult,
    QueueEntry,
    ensure_queue_transition,
)
from ride_dispatch.domain.enums import (
    ACTIVE_QUEUE_STATUSES,
    AcceptOutcome,
    QueueStatus,
    RideStatus,
    RideTiming,
)
from ride_dispatch.domain.events import QueueEntryChanged
from ride_dispatch.domain.exceptions import (
    DriverUnavailable,
    InvalidTransition,
    QueueEntryNotFound,
    RideNotFound,
)
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.models import QueueEntryModel
from ride_dispatch.infrastructure.repositories import (
    QueueEntryRepository,
    RideRepository,
    entry_snapshot,
)

from .lifecycle import RideLifecycle, ride_event
from .presence import PresenceStore

logger = logging.getLogger(__name__)


def entry_event(row: QueueEntryModel) -> QueueEntryChanged:
    return QueueEntryChanged(
        ride_id=row.ride_id,
        driver_id=row.driver_id,
        status=QueueStatus(row.status),
        distance_to_pickup=row.distance_to_pickup,
        version=row.version,
    )


class AcceptanceQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: NotificationBroadcaster,
        lifecycle: RideLifecycle,
        presence: PresenceStore,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.lifecycle = lifecycle
        self.presence = presence

    # ── Per-driver actions ────────────────────────────────────────

    async def express_interest(self, ride_id: int, driver_id: int) -> QueueEntry:
        return await self._move(
            ride_id, driver_id, [QueueStatus.VIEWING], QueueStatus.INTERESTED
        )

    async def decline(self, ride_id: int, driver_id: int) -> QueueEntry:
        return await self._move(
            ride_id, driver_id, list(ACTIVE_QUEUE_STATUSES), QueueStatus.DECLINED
        )

    async def _move(
        self,
        ride_id: int,
        driver_id: int,
        sources: list[QueueStatus],
        target: QueueStatus,
    ) -> QueueEntry:
        """Move one entry; repeating a move that already happened is a no-op."""
        async with self.session_factory() as session:
            async with session.begin():
                repo = QueueEntryRepository(session)
                version = await repo.transition(
                    ride_id, driver_id, sources, target, viewed_at=utcnow()
                )
                row = await repo.get(ride_id, driver_id, fresh=True)
                if row is None:
                    raise QueueEntryNotFound(
                        f"Driver {driver_id} has no entry for ride {ride_id}"
                    )
                if version is None:
                    current = QueueStatus(row.status)
                    if current is target:
                        return entry_snapshot(row)
                    logger.warning(
                        "Rejected %s -> %s for driver %s on ride %s",
                        current.value, target.value, driver_id, ride_id,
                    )
                    ensure_queue_transition(current, target)
                    raise InvalidTransition(
                        f"Entry is {current.value}; cannot become {target.value}"
                    )
                event = entry_event(row)
            entry = entry_snapshot(row)

        await self.broadcaster.publish(event)
        return entry

    async def accept(self, ride_id: int, driver_id: int) -> AcceptResult:
        """
        Try to take the ride.

        Returns ``accepted`` for the single winner (and again, unchanged,
        if the winner repeats the call) and ``ride_already_taken`` for
        everyone who arrives after the ride left ``pending``.
        """
        async with self.session_factory() as session:
            async with session.begin():
                ride_repo = RideRepository(session)
                queue_repo = QueueEntryRepository(session)

                ride = await ride_repo.get_by_id(ride_id)
                if ride is None:
                    raise RideNotFound(f"Ride {ride_id} not found")

                version = await self.lifecycle.assign_driver(session, ride, driver_id)
                if version is None:
                    return await self._explain_lost_accept(session, ride_id, driver_id)

                await queue_repo.transition(
                    ride_id,
                    driver_id,
                    list(ACTIVE_QUEUE_STATUSES),
                    QueueStatus.ACCEPTED,
                    viewed_at=utcnow(),
                )
                expired = await queue_repo.expire_active(
                    ride_id, except_driver_id=driver_id
                )

                events: list = [
                    QueueEntryChanged(
                        ride_id=ride_id,
                        driver_id=loser,
                        status=QueueStatus.EXPIRED,
                        version=entry_version,
                    )
                    for loser, entry_version in expired
                ]
                winner = await queue_repo.get(ride_id, driver_id, fresh=True)
                events.append(entry_event(winner))

                if RideTiming(ride.timing) is RideTiming.INSTANT:
                    engaged = await self.presence.engage(session, driver_id, ride_id)
                    if engaged:
                        events.append(engaged)

                ride = await ride_repo.get_by_id(ride_id, fresh=True)
                events.append(ride_event(ride, previous=RideStatus.PENDING))

        logger.info(
            "Ride %s accepted by driver %s; %d competing offers expired",
            ride_id, driver_id, len(expired),
        )
        await self.broadcaster.publish(*events)
        return AcceptResult(
            outcome=AcceptOutcome.ACCEPTED,
            ride_id=ride_id,
            driver_id=driver_id,
            ride_status=RideStatus.ACCEPTED,
        )

    async def _explain_lost_accept(
        self, session: AsyncSession, ride_id: int, driver_id: int
    ) -> AcceptResult:
        """Classify a failed compare-and-set.  Nothing was written."""
        ride = await RideRepository(session).get_by_id(ride_id, fresh=True)
        status = RideStatus(ride.status)

        if status is not RideStatus.PENDING:
            outcome = AcceptOutcome.RIDE_ALREADY_TAKEN
            if ride.driver_id == driver_id:
                outcome = AcceptOutcome.ACCEPTED
            else:
                logger.info(
                    "Driver %s lost ride %s (now %s)", driver_id, ride_id, status.value
                )
            return AcceptResult(
                outcome=outcome, ride_id=ride_id, driver_id=driver_id, ride_status=status
            )

        entry = await QueueEntryRepository(session).get(ride_id, driver_id, fresh=True)
        if entry is None:
            raise QueueEntryNotFound(
                f"Driver {driver_id} has no entry for ride {ride_id}"
            )
        current = QueueStatus(entry.status)
        if current not in ACTIVE_QUEUE_STATUSES:
            logger.warning(
                "Rejected accept from %s entry for driver %s on ride %s",
                current.value, driver_id, ride_id,
            )
            raise InvalidTransition(f"Entry is {current.value}; cannot accept")
        raise DriverUnavailable(
            f"Driver {driver_id} already has an active instant ride"
        )

    # ── Reads ─────────────────────────────────────────────────────

    async def entries_for_ride(self, ride_id: int) -> list[QueueEntry]:
        async with self.session_factory() as session:
            rows = await QueueEntryRepository(session).for_ride(ride_id)
            return [entry_snapshot(r) for r in rows]

    async def open_offers_for_driver(self, driver_id: int) -> list[QueueEntry]:
        async with self.session_factory() as session:
            rows = await QueueEntryRepository(session).open_for_driver(driver_id)
            return [entry_snapshot(r) for r in rows]
