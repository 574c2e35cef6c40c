"""Exceptions raised by the dispatch core."""

from .enums import CancellationReason


class DispatchError(Exception):
    """Base class for every error surfaced by the dispatch core."""


class NotOnline(DispatchError):
    """Coordinate update attempted while the driver is offline."""


class InvalidTransition(DispatchError):
    """A queue or ride action was attempted from a state that forbids it."""


class NoDriverAvailable(DispatchError):
    """Matching found nobody and the ride timed out unmatched."""

    reason = CancellationReason.NO_DRIVER_AVAILABLE


class LocationUnavailable(DispatchError):
    """A location sample could not be taken for a driver."""


class RideNotFound(DispatchError):
    pass


class QueueEntryNotFound(DispatchError):
    pass


class PresenceNotFound(DispatchError):
    pass


class DriverUnavailable(DispatchError):
    """Driver already holds an active instant ride."""
