"""
SQLAlchemy ORM models  (maps to PostgreSQL; SQLite for tests).

Tables
------
* ``driver_presence`` -- one row per driver: online/available/position
* ``rides``           -- ride requests and their lifecycle status
* ``queue_entries``   -- one row per (ride, driver) candidacy, kept for audit

Indexes
-------
* **B-Tree** on ``driver_presence(available, h3_cell)`` for the proximity
  prefilter, ``rides.status`` for the sweep, and
  ``queue_entries(driver_id, status)`` for a driver's open offers.

Constraints
-----------
* ``available`` implies ``online``.
* ``rides.driver_id`` is set exactly when the status is accepted,
  in_progress or completed.
* ``(ride_id, driver_id)`` is unique in ``queue_entries``.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .database import Base
from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.enums import (
    ASSIGNED_STATUSES,
    QueueStatus,
    RideStatus,
    RideTiming,
    enum_values,
)

_ASSIGNED_SQL = ", ".join(sorted(f"'{s.value}'" for s in ASSIGNED_STATUSES))


class DriverPresenceModel(Base):
    __tablename__ = "driver_presence"

    driver_id = Column(Integer, primary_key=True, autoincrement=False)
    online = Column(Boolean, default=False, nullable=False)
    available = Column(Boolean, default=False, nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    active_ride_id = Column(Integer, nullable=True)
    version = Column(Integer, default=0, nullable=False)
    last_updated = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("NOT available OR online", name="ck_presence_available_online"),
        Index("idx_presence_available_cell", "available", "h3_cell"),
        Index("idx_presence_online_updated", "online", "last_updated"),
    )


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    timing = Column(
        Enum(RideTiming, name="ride_timing", values_callable=enum_values),
        default=RideTiming.INSTANT,
        nullable=False,
    )
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    estimated_cost = Column(Float, nullable=True)

    status = Column(
        Enum(RideStatus, name="ride_status", values_callable=enum_values),
        default=RideStatus.PENDING,
        nullable=False,
    )
    driver_id = Column(Integer, nullable=True)
    cancellation_reason = Column(String(40), nullable=True)
    match_attempts = Column(Integer, default=0, nullable=False)
    last_matched_at = Column(DateTime(timezone=True), nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            f"(driver_id IS NOT NULL) = (status IN ({_ASSIGNED_SQL}))",
            name="ck_rides_driver_matches_status",
        ),
        Index("idx_rides_status", "status"),
        Index("idx_rides_driver_status", "driver_id", "status"),
        Index("idx_rides_rider", "rider_id"),
    )


class QueueEntryModel(Base):
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False)
    driver_id = Column(Integer, nullable=False)
    status = Column(
        Enum(QueueStatus, name="queue_status", values_callable=enum_values),
        default=QueueStatus.VIEWING,
        nullable=False,
    )
    distance_to_pickup = Column(Float, nullable=True)
    viewed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("ride_id", "driver_id", name="uq_queue_ride_driver"),
        Index("idx_queue_driver_status", "driver_id", "status"),
        Index("idx_queue_ride_status", "ride_id", "status"),
    )
