"""
Typed events published by the dispatch core.

Every event carries the entity identifiers, the entity ``version`` after
the change and ``occurred_at``.  Delivery is at-least-once, so
subscribers deduplicate on ``dedupe_key``.

Ordering
--------
Each operation publishes after its own commit, from its own coroutine.
Two operations committing close together on one ride (an interest and a
competing accept, say) can therefore reach Redis in either order.
``version`` grows with every committed change to an entity, so
subscribers order per entity by ``version`` and ignore anything not
newer than what they already hold.  Within a single operation events
are published in commit order.

Topics
------
* ``presence`` / ``presence:{driver_id}`` -- driver online/offline/moved
* ``driver:{driver_id}``                  -- a driver's own offers and entries
* ``ride:{ride_id}``                      -- everything about one ride
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .clock import utcnow
from .enums import QueueStatus, RideStatus


def ride_topic(ride_id: int) -> str:
    return f"ride:{ride_id}"


def driver_topic(driver_id: int) -> str:
    return f"driver:{driver_id}"


def presence_topic(driver_id: int | None = None) -> str:
    return "presence" if driver_id is None else f"presence:{driver_id}"


class _Event(BaseModel):
    version: int
    occurred_at: datetime = Field(default_factory=utcnow)

    def topics(self) -> list[str]:
        raise NotImplementedError

    @property
    def dedupe_key(self) -> tuple:
        raise NotImplementedError


class PresenceChanged(_Event):
    kind: Literal["presence.changed"] = "presence.changed"
    driver_id: int
    online: bool
    available: bool
    lat: Optional[float] = None
    lng: Optional[float] = None

    def topics(self) -> list[str]:
        return [presence_topic(), presence_topic(self.driver_id)]

    @property
    def dedupe_key(self) -> tuple:
        return ("presence", self.driver_id, self.version)


class QueueEntryChanged(_Event):
    """``queue.offered`` for a new candidacy, ``queue.entry_changed`` after."""

    kind: Literal["queue.offered", "queue.entry_changed"] = "queue.entry_changed"
    ride_id: int
    driver_id: int
    status: QueueStatus
    distance_to_pickup: Optional[float] = None

    def topics(self) -> list[str]:
        return [driver_topic(self.driver_id), ride_topic(self.ride_id)]

    @property
    def dedupe_key(self) -> tuple:
        return ("queue", self.ride_id, self.driver_id, self.version)


class RideStatusChanged(_Event):
    kind: Literal["ride.status_changed"] = "ride.status_changed"
    ride_id: int
    rider_id: int
    status: RideStatus
    previous_status: Optional[RideStatus] = None
    driver_id: Optional[int] = None
    reason: Optional[str] = None

    def topics(self) -> list[str]:
        topics = [ride_topic(self.ride_id)]
        if self.driver_id is not None:
            topics.append(driver_topic(self.driver_id))
        return topics

    @property
    def dedupe_key(self) -> tuple:
        return ("ride", self.ride_id, self.version)


DispatchEvent = Annotated[
    Union[PresenceChanged, QueueEntryChanged, RideStatusChanged],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[DispatchEvent] = TypeAdapter(DispatchEvent)


def parse_event(raw: str | bytes) -> DispatchEvent:
    """Decode an event published by ``NotificationBroadcaster``."""
    return _event_adapter.validate_json(raw)
