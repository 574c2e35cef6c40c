"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ride_dispatch.domain.entities import (
    AcceptResult,
    Coordinates,
    DriverPresence,
    QueueEntry,
    Ride,
    RideRequest,
)
from ride_dispatch.domain.enums import (
    AcceptOutcome,
    QueueStatus,
    RideStatus,
    RideTiming,
)


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    rider_id: int
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    timing: RideTiming = RideTiming.INSTANT
    scheduled_at: Optional[datetime] = None
    estimated_cost: Optional[float] = Field(None, ge=0)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )

    @model_validator(mode="after")
    def _scheduled_needs_time(self) -> "RideCreateRequest":
        if self.timing is not RideTiming.INSTANT and self.scheduled_at is None:
            raise ValueError("scheduled rides require scheduled_at")
        return self

    def to_domain(self) -> RideRequest:
        return RideRequest(
            rider_id=self.rider_id,
            pickup=Coordinates(self.pickup_lat, self.pickup_lng),
            dropoff=Coordinates(self.dropoff_lat, self.dropoff_lng),
            timing=self.timing,
            scheduled_at=self.scheduled_at,
            estimated_cost=self.estimated_cost,
            idempotency_key=self.idempotency_key,
        )


class CancelRequest(BaseModel):
    expected_status: Optional[RideStatus] = Field(
        None,
        description="Status the rider last saw; the cancel fails if the ride moved on.",
    )


class DriverActionRequest(BaseModel):
    driver_id: int


class PresenceUpdateRequest(BaseModel):
    online: bool
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def _online_needs_position(self) -> "PresenceUpdateRequest":
        if self.online and (self.lat is None or self.lng is None):
            raise ValueError("going online requires lat and lng")
        return self


class LocationSampleRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


# ── Responses ─────────────────────────────────────────────────────────


class RideResponse(BaseModel):
    id: int
    rider_id: int
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    timing: RideTiming
    status: RideStatus
    scheduled_at: Optional[datetime] = None
    estimated_cost: Optional[float] = None
    driver_id: Optional[int] = None
    cancellation_reason: Optional[str] = None
    match_attempts: int = 0
    version: int
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, ride: Ride) -> "RideResponse":
        return cls(
            id=ride.id,
            rider_id=ride.rider_id,
            pickup_lat=ride.pickup.lat,
            pickup_lng=ride.pickup.lng,
            dropoff_lat=ride.dropoff.lat,
            dropoff_lng=ride.dropoff.lng,
            timing=ride.timing,
            status=ride.status,
            scheduled_at=ride.scheduled_at,
            estimated_cost=ride.estimated_cost,
            driver_id=ride.driver_id,
            cancellation_reason=ride.cancellation_reason,
            match_attempts=ride.match_attempts,
            version=ride.version,
            created_at=ride.created_at,
            accepted_at=ride.accepted_at,
        )


class SubmissionResponse(RideResponse):
    drivers_notified: int = 0
    radius_km: Optional[float] = None


class QueueEntryResponse(BaseModel):
    ride_id: int
    driver_id: int
    status: QueueStatus
    distance_to_pickup: Optional[float] = None
    viewed_at: Optional[datetime] = None
    version: int

    model_config = {"from_attributes": True}


class AcceptResponse(BaseModel):
    outcome: AcceptOutcome
    ride_id: int
    driver_id: int
    ride_status: RideStatus

    model_config = {"from_attributes": True}


class PresenceResponse(BaseModel):
    driver_id: int
    online: bool
    available: bool
    lat: Optional[float] = None
    lng: Optional[float] = None
    active_ride_id: Optional[int] = None
    last_updated: Optional[datetime] = None
    version: int

    @classmethod
    def from_entity(cls, presence: DriverPresence) -> "PresenceResponse":
        coords = presence.coordinates
        return cls(
            driver_id=presence.driver_id,
            online=presence.online,
            available=presence.available,
            lat=coords.lat if coords else None,
            lng=coords.lng if coords else None,
            active_ride_id=presence.active_ride_id,
            last_updated=presence.last_updated,
            version=presence.version,
        )


class PendingRidesResponse(BaseModel):
    count: int
    ride_ids: list[int] = []


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str


def queue_responses(entries: list[QueueEntry]) -> list[QueueEntryResponse]:
    return [QueueEntryResponse.model_validate(e) for e in entries]


def accept_response(result: AcceptResult) -> AcceptResponse:
    return AcceptResponse.model_validate(result)
