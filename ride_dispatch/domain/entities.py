"""
Domain entities and value objects.

Everything here is an immutable snapshot.  Services hand these out so
callers never hold references into ORM state; a change is always made
through a service operation, never by assigning to a field.

Patterns used
-------------
- **State Pattern** tables (``RIDE_TRANSITIONS`` / ``QUEUE_TRANSITIONS``)
  checked by ``ensure_ride_transition`` / ``ensure_queue_transition``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .clock import as_utc
from .enums import (
    ACTIVE_QUEUE_STATUSES,
    QUEUE_TRANSITIONS,
    RIDE_TRANSITIONS,
    AcceptOutcome,
    QueueStatus,
    RideStatus,
    RideTiming,
    TimingClass,
)
from .exceptions import InvalidTransition


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


# ── Transition guards ─────────────────────────────────────────────────


def ensure_ride_transition(current: RideStatus, new: RideStatus) -> None:
    if new not in RIDE_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Ride cannot move from {current.value} to {new.value}"
        )


def ensure_queue_transition(current: QueueStatus, new: QueueStatus) -> None:
    if new not in QUEUE_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Queue entry cannot move from {current.value} to {new.value}"
        )


def classify_timing(
    timing: RideTiming,
    scheduled_at: Optional[datetime],
    now: datetime,
    near_term_minutes: int,
) -> TimingClass:
    """Instant rides, and single scheduled rides due soon, are near-term."""
    if timing is RideTiming.INSTANT:
        return TimingClass.NEAR_TERM
    if timing is RideTiming.SCHEDULED_SINGLE and scheduled_at is not None:
        if as_utc(scheduled_at) - now <= timedelta(minutes=near_term_minutes):
            return TimingClass.NEAR_TERM
    return TimingClass.SCHEDULED


# ── Entities ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DriverPresence:
    driver_id: int
    online: bool = False
    available: bool = False
    coordinates: Optional[Coordinates] = None
    last_updated: Optional[datetime] = None
    active_ride_id: Optional[int] = None
    version: int = 0


@dataclass(frozen=True)
class RideRequest:
    """A rider's booking as it arrives, before it has an identity."""

    rider_id: int
    pickup: Coordinates
    dropoff: Coordinates
    timing: RideTiming = RideTiming.INSTANT
    scheduled_at: Optional[datetime] = None
    estimated_cost: Optional[float] = None
    idempotency_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.timing.is_scheduled and self.scheduled_at is None:
            raise ValueError("Scheduled rides need a scheduled_at time")


@dataclass(frozen=True)
class Ride:
    id: int
    rider_id: int
    pickup: Coordinates
    dropoff: Coordinates
    timing: RideTiming = RideTiming.INSTANT
    status: RideStatus = RideStatus.PENDING
    scheduled_at: Optional[datetime] = None
    estimated_cost: Optional[float] = None
    driver_id: Optional[int] = None
    cancellation_reason: Optional[str] = None
    match_attempts: int = 0
    last_matched_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    def timing_class(self, now: datetime, near_term_minutes: int) -> TimingClass:
        return classify_timing(
            self.timing, self.scheduled_at, now, near_term_minutes
        )


@dataclass(frozen=True)
class QueueEntry:
    ride_id: int
    driver_id: int
    status: QueueStatus = QueueStatus.VIEWING
    distance_to_pickup: Optional[float] = None
    viewed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES


# ── Operation results ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Candidate:
    driver_id: int
    distance_km: float


@dataclass(frozen=True)
class MatchResult:
    ride_id: int
    timing_class: Optional[TimingClass] = None
    radius_km: Optional[float] = None
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)

    @property
    def driver_ids(self) -> list[int]:
        return [c.driver_id for c in self.candidates]


@dataclass(frozen=True)
class AcceptResult:
    """Result of an ``accept`` call.  Losing the race is not an error."""

    outcome: AcceptOutcome
    ride_id: int
    driver_id: int
    ride_status: RideStatus

    @property
    def accepted(self) -> bool:
        return self.outcome is AcceptOutcome.ACCEPTED
