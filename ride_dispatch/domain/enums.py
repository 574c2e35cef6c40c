"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

# Statuses in which a ride carries an assigned driver
ASSIGNED_STATUSES: frozenset[RideStatus] = frozenset(
    {RideStatus.ACCEPTED, RideStatus.IN_PROGRESS, RideStatus.COMPLETED}
)


class QueueStatus(str, enum.Enum):
    VIEWING = "viewing"
    INTERESTED = "interested"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


QUEUE_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.VIEWING: {
        QueueStatus.INTERESTED,
        QueueStatus.ACCEPTED,
        QueueStatus.DECLINED,
        QueueStatus.EXPIRED,
    },
    QueueStatus.INTERESTED: {
        QueueStatus.ACCEPTED,
        QueueStatus.DECLINED,
        QueueStatus.EXPIRED,
    },
    QueueStatus.ACCEPTED: set(),
    QueueStatus.DECLINED: set(),
    QueueStatus.EXPIRED: set(),
}

# Entries a driver can still act on
ACTIVE_QUEUE_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.VIEWING, QueueStatus.INTERESTED}
)


class RideTiming(str, enum.Enum):
    INSTANT = "instant"
    SCHEDULED_SINGLE = "scheduled_single"
    SCHEDULED_RECURRING = "scheduled_recurring"

    @property
    def is_scheduled(self) -> bool:
        return self is not RideTiming.INSTANT


class TimingClass(str, enum.Enum):
    """How the matcher treats a ride: radius-bound or pool-wide."""

    NEAR_TERM = "near_term"
    SCHEDULED = "scheduled"


class AcceptOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    RIDE_ALREADY_TAKEN = "ride_already_taken"


class CancellationReason(str, enum.Enum):
    RIDER_CANCELLED = "rider_cancelled"
    NO_DRIVER_AVAILABLE = "no_driver_available"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enums by value (``"pending"``) rather than by member name."""
    return [member.value for member in enum_cls]
