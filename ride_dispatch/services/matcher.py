"""
DispatchMatcher -- turns a pending ride into queue entries.

Candidate selection
-------------------
* **Near-term** (instant, or a single scheduled ride due within
  ``scheduled_near_term_minutes``): available drivers within the radius,
  5 km by default.  Bounds pickup latency.
* **Scheduled** (everything else): every available driver.  There is
  lead time for the driver to reposition.

The matcher never picks a winner.  Every candidate gets a ``viewing``
entry and the AcceptanceQueue resolves who gets the ride.  Drivers that
already hold an entry for the ride (in any status) are skipped, so a
re-match only reaches new drivers and never revives a declined offer.

Complexity
----------
Let D = available drivers inside the covering H3 disk.

* Candidate query: one indexed lookup + O(D log D) ranking
* Enqueue:         O(D) inserts in one transaction
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.entities import MatchResult
from ride_dispatch.domain.enums import QueueStatus, RideStatus, TimingClass
from ride_dispatch.domain.events import QueueEntryChanged
from ride_dispatch.domain.exceptions import RideNotFound
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.models import QueueEntryModel
from ride_dispatch.infrastructure.repositories import (
    QueueEntryRepository,
    RideRepository,
    ride_snapshot,
)

from .presence import PresenceStore

logger = logging.getLogger(__name__)


class DispatchMatcher:
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

    async def match_and_enqueue(
        self, ride_id: int, radius_km: Optional[float] = None
    ) -> MatchResult:
        """
        Offer ``ride_id`` to the drivers that qualify right now.

        ``radius_km`` overrides the configured instant radius (re-match
        sweeps pass a wider one); it is ignored for scheduled rides.
        A ride that is no longer pending yields an empty result.
        """
        radius = radius_km if radius_km is not None else self.settings.instant_radius_km
        now = utcnow()

        async with self.session_factory() as session:
            async with session.begin():
                ride_repo = RideRepository(session)
                queue_repo = QueueEntryRepository(session)

                row = await ride_repo.get_by_id(ride_id, for_update=True)
                if row is None:
                    raise RideNotFound(f"Ride {ride_id} not found")
                ride = ride_snapshot(row)
                if ride.status is not RideStatus.PENDING:
                    logger.debug("Ride %s is %s; not matching", ride_id, ride.status.value)
                    return MatchResult(ride_id=ride_id)

                timing_class = ride.timing_class(now, self.settings.scheduled_near_term_minutes)
                ranked = await self.presence.list_available_within(
                    ride.pickup, radius, timing_class, session=session
                )
                already_offered = await queue_repo.driver_ids_for_ride(ride_id)
                candidates = tuple(
                    c for c in ranked if c.driver_id not in already_offered
                )

                await queue_repo.add_many(
                    [
                        QueueEntryModel(
                            ride_id=ride_id,
                            driver_id=c.driver_id,
                            status=QueueStatus.VIEWING,
                            distance_to_pickup=round(c.distance_km, 3),
                            version=1,
                            created_at=now,
                        )
                        for c in candidates
                    ]
                )
                await ride_repo.record_match_attempt(ride_id, now)

        result = MatchResult(
            ride_id=ride_id,
            timing_class=timing_class,
            radius_km=radius if timing_class is TimingClass.NEAR_TERM else None,
            candidates=candidates,
        )
        if not candidates:
            logger.info(
                "Ride %s: no new drivers (%s, radius=%s)",
                ride_id, timing_class.value, result.radius_km,
            )
            return result

        logger.info(
            "Ride %s offered to %d drivers (%s, radius=%s)",
            ride_id, len(candidates), timing_class.value, result.radius_km,
        )
        await self.broadcaster.publish(
            *(
                QueueEntryChanged(
                    kind="queue.offered",
                    ride_id=ride_id,
                    driver_id=c.driver_id,
                    status=QueueStatus.VIEWING,
                    distance_to_pickup=round(c.distance_km, 3),
                    version=1,
                )
                for c in candidates
            )
        )
        return result
