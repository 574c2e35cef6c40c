"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 12 online drivers spread around central Bulawayo
  - 4 sample rides (three instant, one scheduled for tomorrow morning)

Everything goes through ``DispatchService`` so the queue entries and
events look exactly like real traffic.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import func, select

from ride_dispatch.config import settings
from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.entities import Coordinates, RideRequest
from ride_dispatch.domain.enums import RideTiming
from ride_dispatch.infrastructure.database import get_engine, get_session_factory
from ride_dispatch.infrastructure.models import RideModel
from ride_dispatch.infrastructure.redis_client import get_redis
from ride_dispatch.services.dispatch import DispatchService

# Bulawayo city centre (approx)
CENTRE_LAT, CENTRE_LNG = -20.1500, 28.5800


DRIVERS = [
    (101, -20.1505, 28.5810),
    (102, -20.1490, 28.5785),
    (103, -20.1520, 28.5830),
    (104, -20.1475, 28.5760),
    (105, -20.1550, 28.5870),
    (106, -20.1440, 28.5720),
    (107, -20.1600, 28.5900),
    (108, -20.1380, 28.5690),
    (109, -20.1700, 28.6000),
    (110, -20.1300, 28.5600),
    # Outside the instant radius; only reached by scheduled rides or re-matching
    (111, -20.2200, 28.6500),
    (112, -20.0800, 28.5000),
]

RIDES = [
    {"rider_id": 1, "pickup": (-20.1510, 28.5815), "dropoff": (-20.1650, 28.6100)},
    {"rider_id": 2, "pickup": (-20.1470, 28.5770), "dropoff": (-20.1200, 28.5500)},
    {"rider_id": 3, "pickup": (-20.1560, 28.5880), "dropoff": (-20.1400, 28.5950)},
    {
        "rider_id": 4,
        "pickup": (-20.1500, 28.5800),
        "dropoff": (-20.0170, 28.6180),
        "timing": RideTiming.SCHEDULED_SINGLE,
        "in_hours": 18,
    },
]


async def seed():
    session_factory = get_session_factory()
    async with session_factory() as session:
        # Check if already seeded
        result = await session.execute(select(func.count()).select_from(RideModel))
        if (result.scalar() or 0) > 0:
            print("Database already seeded. Skipping.")
            return

    dispatch = DispatchService.build(session_factory, await get_redis(), settings)
    try:
        # ── Drivers ───────────────────────────────────────────────────
        for driver_id, lat, lng in DRIVERS:
            await dispatch.presence.set_online(driver_id, Coordinates(lat, lng))
        print(f"  Put {len(DRIVERS)} drivers online")

        # ── Rides ─────────────────────────────────────────────────────
        for i, r in enumerate(RIDES):
            timing = r.get("timing", RideTiming.INSTANT)
            scheduled_at = (
                utcnow() + timedelta(hours=r["in_hours"]) if timing.is_scheduled else None
            )
            submission = await dispatch.submit_ride_request(
                RideRequest(
                    rider_id=r["rider_id"],
                    pickup=Coordinates(*r["pickup"]),
                    dropoff=Coordinates(*r["dropoff"]),
                    timing=timing,
                    scheduled_at=scheduled_at,
                    idempotency_key=f"seed-ride-{i}",
                )
            )
            print(
                f"  Ride {submission.ride.id} ({timing.value}) offered to "
                f"{len(submission.match.candidates)} drivers"
            )
    finally:
        await dispatch.shutdown()

    print("Seed complete.")


async def main():
    try:
        await seed()
    finally:
        await get_engine().dispose()


if __name__ == "__main__":
    asyncio.run(main())
