"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  State changes that may race are written
as compare-and-set ``UPDATE ... WHERE status IN (...) RETURNING`` so the
database decides the winner; ``None`` from those methods means the row
was not in an allowed state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DriverPresenceModel, QueueEntryModel, RideModel
from ride_dispatch.domain.entities import (
    Coordinates,
    DriverPresence,
    QueueEntry,
    Ride,
)
from ride_dispatch.domain.enums import (
    ACTIVE_QUEUE_STATUSES,
    QueueStatus,
    RideStatus,
    RideTiming,
)

_NO_SYNC = {"synchronize_session": False}


# ── Snapshots ─────────────────────────────────────────────────────────


def presence_snapshot(row: DriverPresenceModel) -> DriverPresence:
    coords = None
    if row.lat is not None and row.lng is not None:
        coords = Coordinates(row.lat, row.lng)
    return DriverPresence(
        driver_id=row.driver_id,
        online=row.online,
        available=row.available,
        coordinates=coords,
        last_updated=row.last_updated,
        active_ride_id=row.active_ride_id,
        version=row.version,
    )


def ride_snapshot(row: RideModel) -> Ride:
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        pickup=Coordinates(row.pickup_lat, row.pickup_lng),
        dropoff=Coordinates(row.dropoff_lat, row.dropoff_lng),
        timing=RideTiming(row.timing),
        status=RideStatus(row.status),
        scheduled_at=row.scheduled_at,
        estimated_cost=row.estimated_cost,
        driver_id=row.driver_id,
        cancellation_reason=row.cancellation_reason,
        match_attempts=row.match_attempts,
        last_matched_at=row.last_matched_at,
        version=row.version,
        created_at=row.created_at,
        accepted_at=row.accepted_at,
    )


def entry_snapshot(row: QueueEntryModel) -> QueueEntry:
    return QueueEntry(
        ride_id=row.ride_id,
        driver_id=row.driver_id,
        status=QueueStatus(row.status),
        distance_to_pickup=row.distance_to_pickup,
        viewed_at=row.viewed_at,
        version=row.version,
    )


# ── Repositories ──────────────────────────────────────────────────────


class PresenceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, driver_id: int, *, for_update: bool = False
    ) -> Optional[DriverPresenceModel]:
        query = select(DriverPresenceModel).where(
            DriverPresenceModel.driver_id == driver_id
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(
            query.execution_options(populate_existing=for_update)
        )
        return result.scalar_one_or_none()

    async def add(self, row: DriverPresenceModel) -> DriverPresenceModel:
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_available(
        self, cells: Optional[Iterable[str]] = None
    ) -> list[DriverPresenceModel]:
        """Available drivers with a known position, optionally within ``cells``."""
        query = select(DriverPresenceModel).where(
            DriverPresenceModel.available.is_(True),
            DriverPresenceModel.lat.is_not(None),
            DriverPresenceModel.lng.is_not(None),
        )
        if cells is not None:
            query = query.where(DriverPresenceModel.h3_cell.in_(list(cells)))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_stale_online(self, cutoff: datetime) -> list[DriverPresenceModel]:
        result = await self.session.execute(
            select(DriverPresenceModel)
            .where(
                DriverPresenceModel.online.is_(True),
                DriverPresenceModel.last_updated < cutoff,
            )
            .with_for_update()
        )
        return list(result.scalars().all())

    async def touch(self, driver_id: int, when: datetime) -> bool:
        """Bump ``last_updated`` of an online driver; position and version stay."""
        result = await self.session.execute(
            update(DriverPresenceModel)
            .where(
                DriverPresenceModel.driver_id == driver_id,
                DriverPresenceModel.online.is_(True),
            )
            .values(last_updated=when)
            .returning(DriverPresenceModel.driver_id)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none() is not None


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, ride: RideModel) -> RideModel:
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_id(
        self, ride_id: int, *, fresh: bool = False, for_update: bool = False
    ) -> Optional[RideModel]:
        query = select(RideModel).where(RideModel.id == ride_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(
            query.execution_options(populate_existing=fresh or for_update)
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> Optional[RideModel]:
        result = await self.session.execute(
            select(RideModel).where(RideModel.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        ride_id: int,
        from_statuses: Iterable[RideStatus],
        *conditions: Any,
        **values: Any,
    ) -> Optional[int]:
        """
        Atomically move a ride out of ``from_statuses``.

        Returns the new ``version`` when this caller won, ``None`` when the
        ride was not in an allowed status (or ``conditions`` failed).
        """
        result = await self.session.execute(
            update(RideModel)
            .where(
                RideModel.id == ride_id,
                RideModel.status.in_(list(from_statuses)),
                *conditions,
            )
            .values(version=RideModel.version + 1, **values)
            .returning(RideModel.version)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def driver_has_active_instant_ride(driver_id: int, exclude_ride_id: int):
        """SQL condition: the driver already holds another live instant ride."""
        other = RideModel.__table__.alias("other_ride")
        return exists().where(
            other.c.driver_id == driver_id,
            other.c.timing == RideTiming.INSTANT,
            other.c.status.in_([RideStatus.ACCEPTED, RideStatus.IN_PROGRESS]),
            other.c.id != exclude_ride_id,
        )

    async def record_match_attempt(self, ride_id: int, when: datetime) -> None:
        await self.session.execute(
            update(RideModel)
            .where(RideModel.id == ride_id)
            .values(
                match_attempts=RideModel.match_attempts + 1,
                last_matched_at=when,
            )
            .execution_options(**_NO_SYNC)
        )

    async def get_pending_without_active_entries(self) -> list[RideModel]:
        active = exists().where(
            QueueEntryModel.ride_id == RideModel.id,
            QueueEntryModel.status.in_(list(ACTIVE_QUEUE_STATUSES)),
        )
        result = await self.session.execute(
            select(RideModel)
            .where(RideModel.status == RideStatus.PENDING, ~active)
            .order_by(RideModel.created_at)
        )
        return list(result.scalars().all())

    async def get_pending(self) -> list[RideModel]:
        result = await self.session.execute(
            select(RideModel)
            .where(RideModel.status == RideStatus.PENDING)
            .order_by(RideModel.created_at)
        )
        return list(result.scalars().all())


class QueueEntryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_many(self, entries: list[QueueEntryModel]) -> None:
        self.session.add_all(entries)
        await self.session.flush()

    async def get(
        self, ride_id: int, driver_id: int, *, fresh: bool = False
    ) -> Optional[QueueEntryModel]:
        result = await self.session.execute(
            select(QueueEntryModel)
            .where(
                QueueEntryModel.ride_id == ride_id,
                QueueEntryModel.driver_id == driver_id,
            )
            .execution_options(populate_existing=fresh)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def is_active(ride_id: int, driver_id: int):
        """SQL condition: the driver still holds an open entry on the ride."""
        return exists().where(
            QueueEntryModel.ride_id == ride_id,
            QueueEntryModel.driver_id == driver_id,
            QueueEntryModel.status.in_(list(ACTIVE_QUEUE_STATUSES)),
        )

    async def driver_ids_for_ride(self, ride_id: int) -> set[int]:
        result = await self.session.execute(
            select(QueueEntryModel.driver_id).where(QueueEntryModel.ride_id == ride_id)
        )
        return set(result.scalars().all())

    async def transition(
        self,
        ride_id: int,
        driver_id: int,
        from_statuses: Iterable[QueueStatus],
        to_status: QueueStatus,
        viewed_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Compare-and-set one entry.  Returns the new version or ``None``."""
        values: dict[str, Any] = {
            "status": to_status,
            "version": QueueEntryModel.version + 1,
        }
        if viewed_at is not None:
            values["viewed_at"] = viewed_at
        result = await self.session.execute(
            update(QueueEntryModel)
            .where(
                QueueEntryModel.ride_id == ride_id,
                QueueEntryModel.driver_id == driver_id,
                QueueEntryModel.status.in_(list(from_statuses)),
            )
            .values(**values)
            .returning(QueueEntryModel.version)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()

    async def expire_active(
        self, ride_id: int, *, except_driver_id: Optional[int] = None
    ) -> list[tuple[int, int]]:
        """
        Force every ``viewing``/``interested`` entry of a ride to ``expired``.

        Declined entries are left alone.  Returns ``(driver_id, version)``
        for each row actually changed.
        """
        conditions = [
            QueueEntryModel.ride_id == ride_id,
            QueueEntryModel.status.in_(list(ACTIVE_QUEUE_STATUSES)),
        ]
        if except_driver_id is not None:
            conditions.append(QueueEntryModel.driver_id != except_driver_id)
        result = await self.session.execute(
            update(QueueEntryModel)
            .where(and_(*conditions))
            .values(status=QueueStatus.EXPIRED, version=QueueEntryModel.version + 1)
            .returning(QueueEntryModel.driver_id, QueueEntryModel.version)
            .execution_options(**_NO_SYNC)
        )
        return sorted((row[0], row[1]) for row in result.all())

    async def for_ride(self, ride_id: int) -> list[QueueEntryModel]:
        result = await self.session.execute(
            select(QueueEntryModel)
            .where(QueueEntryModel.ride_id == ride_id)
            .order_by(QueueEntryModel.distance_to_pickup, QueueEntryModel.id)
        )
        return list(result.scalars().all())

    async def open_for_driver(self, driver_id: int) -> list[QueueEntryModel]:
        """Entries the driver can still act on, on rides that are still pending."""
        result = await self.session.execute(
            select(QueueEntryModel)
            .join(RideModel, RideModel.id == QueueEntryModel.ride_id)
            .where(
                QueueEntryModel.driver_id == driver_id,
                QueueEntryModel.status.in_(list(ACTIVE_QUEUE_STATUSES)),
                RideModel.status == RideStatus.PENDING,
            )
            .order_by(QueueEntryModel.created_at.desc())
        )
        return list(result.scalars().all())
