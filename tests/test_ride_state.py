"""Unit tests for ride / queue-entry state transitions (State Pattern)."""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.entities import (
    AcceptResult,
    QueueEntry,
    Ride,
    RideRequest,
    classify_timing,
    ensure_queue_transition,
    ensure_ride_transition,
)
from ride_dispatch.domain.enums import (
    ASSIGNED_STATUSES,
    RIDE_TRANSITIONS,
    AcceptOutcome,
    CancellationReason,
    QueueStatus,
    RideStatus,
    RideTiming,
    TimingClass,
)
from ride_dispatch.domain.exceptions import InvalidTransition, NoDriverAvailable
from ride_dispatch.infrastructure.models import RideModel
from tests.conftest import DROPOFF, PICKUP


class TestRideStateMachine:
    def test_initial_status_is_pending(self):
        ride = Ride(id=1, rider_id=1, pickup=PICKUP, dropoff=DROPOFF)
        assert ride.status == RideStatus.PENDING

    # ── Valid transitions ─────────────────────────────────────────

    @pytest.mark.parametrize(
        "current,new",
        [
            (RideStatus.PENDING, RideStatus.ACCEPTED),
            (RideStatus.PENDING, RideStatus.CANCELLED),
            (RideStatus.ACCEPTED, RideStatus.IN_PROGRESS),
            (RideStatus.ACCEPTED, RideStatus.CANCELLED),
            (RideStatus.IN_PROGRESS, RideStatus.COMPLETED),
        ],
    )
    def test_allowed(self, current, new):
        ensure_ride_transition(current, new)

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_completed_fails(self):
        with pytest.raises(InvalidTransition):
            ensure_ride_transition(RideStatus.PENDING, RideStatus.COMPLETED)

    def test_in_progress_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransition):
            ensure_ride_transition(RideStatus.IN_PROGRESS, RideStatus.CANCELLED)

    @pytest.mark.parametrize("terminal", [RideStatus.COMPLETED, RideStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        for target in RideStatus:
            with pytest.raises(InvalidTransition):
                ensure_ride_transition(terminal, target)


class TestQueueStateMachine:
    def test_interest_then_accept(self):
        ensure_queue_transition(QueueStatus.VIEWING, QueueStatus.INTERESTED)
        ensure_queue_transition(QueueStatus.INTERESTED, QueueStatus.ACCEPTED)

    def test_accept_straight_from_viewing(self):
        ensure_queue_transition(QueueStatus.VIEWING, QueueStatus.ACCEPTED)

    def test_cannot_go_back_to_viewing(self):
        with pytest.raises(InvalidTransition):
            ensure_queue_transition(QueueStatus.INTERESTED, QueueStatus.VIEWING)

    @pytest.mark.parametrize(
        "terminal", [QueueStatus.ACCEPTED, QueueStatus.DECLINED, QueueStatus.EXPIRED]
    )
    def test_terminal_states_are_final(self, terminal):
        for target in QueueStatus:
            with pytest.raises(InvalidTransition):
                ensure_queue_transition(terminal, target)

    def test_is_active(self):
        assert QueueEntry(ride_id=1, driver_id=1).is_active
        assert not QueueEntry(ride_id=1, driver_id=1, status=QueueStatus.DECLINED).is_active


class TestTimingClass:
    def test_instant_is_near_term(self):
        assert (
            classify_timing(RideTiming.INSTANT, None, utcnow(), 60)
            is TimingClass.NEAR_TERM
        )

    def test_single_ride_within_window_is_near_term(self):
        now = utcnow()
        assert (
            classify_timing(
                RideTiming.SCHEDULED_SINGLE, now + timedelta(minutes=45), now, 60
            )
            is TimingClass.NEAR_TERM
        )

    def test_single_ride_beyond_window_is_scheduled(self):
        now = utcnow()
        assert (
            classify_timing(RideTiming.SCHEDULED_SINGLE, now + timedelta(hours=5), now, 60)
            is TimingClass.SCHEDULED
        )

    def test_recurring_is_always_scheduled(self):
        now = utcnow()
        assert (
            classify_timing(
                RideTiming.SCHEDULED_RECURRING, now + timedelta(minutes=5), now, 60
            )
            is TimingClass.SCHEDULED
        )

    def test_naive_scheduled_time_is_treated_as_utc(self):
        now = utcnow()
        naive = (now + timedelta(minutes=10)).replace(tzinfo=None)
        assert (
            classify_timing(RideTiming.SCHEDULED_SINGLE, naive, now, 60)
            is TimingClass.NEAR_TERM
        )


class TestValueObjects:
    def test_scheduled_request_needs_time(self):
        with pytest.raises(ValueError):
            RideRequest(
                rider_id=1,
                pickup=PICKUP,
                dropoff=DROPOFF,
                timing=RideTiming.SCHEDULED_SINGLE,
            )

    def test_snapshots_are_immutable(self):
        ride = Ride(id=1, rider_id=1, pickup=PICKUP, dropoff=DROPOFF)
        with pytest.raises(AttributeError):
            ride.status = RideStatus.CANCELLED

    def test_accept_result_flag(self):
        won = AcceptResult(AcceptOutcome.ACCEPTED, 1, 2, RideStatus.ACCEPTED)
        lost = AcceptResult(AcceptOutcome.RIDE_ALREADY_TAKEN, 1, 3, RideStatus.ACCEPTED)
        assert won.accepted and not lost.accepted


class TestStoredInvariants:
    def test_assigned_statuses_follow_acceptance(self):
        assigned, frontier = set(), [RideStatus.ACCEPTED]
        while frontier:
            status = frontier.pop()
            assigned.add(status)
            frontier.extend(RIDE_TRANSITIONS[status] - assigned - {RideStatus.CANCELLED})
        assert ASSIGNED_STATUSES == assigned

    def test_timeout_error_names_its_cancellation_reason(self):
        assert NoDriverAvailable.reason is CancellationReason.NO_DRIVER_AVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,driver_id",
        [(RideStatus.PENDING, 5), (RideStatus.ACCEPTED, None)],
    )
    async def test_driver_must_match_status(
        self, dispatch, session_factory, status, driver_id
    ):
        submission = await dispatch.submit_ride_request(
            RideRequest(rider_id=1, pickup=PICKUP, dropoff=DROPOFF)
        )

        with pytest.raises(IntegrityError):
            async with session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(RideModel)
                        .where(RideModel.id == submission.ride.id)
                        .values(status=status, driver_id=driver_id)
                    )
