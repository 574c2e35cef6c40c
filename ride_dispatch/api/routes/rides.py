"""
Ride endpoints
==============

POST  /api/v1/rides                                  -- submit a ride request (202)
GET   /api/v1/rides/{ride_id}                        -- current ride state
GET   /api/v1/rides/{ride_id}/queue                  -- the ride's acceptance queue
PATCH /api/v1/rides/{ride_id}/cancel                 -- rider cancels
POST  /api/v1/rides/{ride_id}/start                  -- assigned driver starts the trip
POST  /api/v1/rides/{ride_id}/complete               -- assigned driver completes it
POST  /api/v1/rides/{ride_id}/queue/{driver_id}/interest
POST  /api/v1/rides/{ride_id}/queue/{driver_id}/accept
POST  /api/v1/rides/{ride_id}/queue/{driver_id}/decline
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from ride_dispatch.api.dependencies import get_dispatch
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    AcceptResponse,
    CancelRequest,
    DriverActionRequest,
    ErrorResponse,
    QueueEntryResponse,
    RideCreateRequest,
    RideResponse,
    SubmissionResponse,
    accept_response,
    queue_responses,
)
from ride_dispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/rides", tags=["rides"])

_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Unknown ride."}}
_CONFLICT = {409: {"model": ErrorResponse, "description": "Illegal transition."}}


@router.post(
    "",
    status_code=202,
    response_model=SubmissionResponse,
    summary="Submit a ride request",
    responses={202: {"description": "Ride created and offered to nearby drivers."}},
)
@limiter.limit("100/minute")
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    dispatch: DispatchService = Depends(get_dispatch),
):
    submission = await dispatch.submit_ride_request(body.to_domain())
    ride = RideResponse.from_entity(submission.ride)
    return SubmissionResponse(
        **ride.model_dump(),
        drivers_notified=len(submission.match.candidates),
        radius_km=submission.match.radius_km,
    )


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status",
    responses=_NOT_FOUND,
)
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_entity(await dispatch.get_ride(ride_id))


@router.get(
    "/{ride_id}/queue",
    response_model=list[QueueEntryResponse],
    summary="List the drivers a ride was offered to",
    responses=_NOT_FOUND,
)
@limiter.limit("100/minute")
async def get_ride_queue(
    request: Request,
    ride_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return queue_responses(await dispatch.ride_queue(ride_id))


@router.patch(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "Transitions a PENDING or ACCEPTED ride to CANCELLED, expiring every "
        "open queue entry and freeing the assigned driver.  Pass "
        "``expected_status`` to fail instead of cancelling a ride that "
        "moved on since the rider last looked."
    ),
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def cancel_ride(
    request: Request,
    ride_id: int,
    body: Optional[CancelRequest] = None,
    dispatch: DispatchService = Depends(get_dispatch),
):
    expected = body.expected_status if body else None
    return RideResponse.from_entity(await dispatch.cancel_ride(ride_id, expected))


@router.post(
    "/{ride_id}/start",
    response_model=RideResponse,
    summary="Start the trip",
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def start_trip(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_entity(await dispatch.start_trip(ride_id, body.driver_id))


@router.post(
    "/{ride_id}/complete",
    response_model=RideResponse,
    summary="Complete the trip",
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def complete_ride(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_entity(
        await dispatch.complete_ride(ride_id, body.driver_id)
    )


# ── Driver actions on a queue entry ───────────────────────────────────


@router.post(
    "/{ride_id}/queue/{driver_id}/interest",
    response_model=QueueEntryResponse,
    summary="Driver marks interest in an offered ride",
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def express_interest(
    request: Request,
    ride_id: int,
    driver_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return QueueEntryResponse.model_validate(
        await dispatch.express_interest(ride_id, driver_id)
    )


@router.post(
    "/{ride_id}/queue/{driver_id}/decline",
    response_model=QueueEntryResponse,
    summary="Driver declines an offered ride",
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def decline_ride(
    request: Request,
    ride_id: int,
    driver_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return QueueEntryResponse.model_validate(await dispatch.decline(ride_id, driver_id))


@router.post(
    "/{ride_id}/queue/{driver_id}/accept",
    response_model=AcceptResponse,
    summary="Driver accepts an offered ride",
    description=(
        "Exactly one concurrent accept wins.  Losers get HTTP 200 with "
        "``outcome = ride_already_taken``; that is an expected result, "
        "not an error."
    ),
    responses={**_NOT_FOUND, **_CONFLICT},
)
@limiter.limit("100/minute")
async def accept_ride(
    request: Request,
    ride_id: int,
    driver_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return accept_response(await dispatch.accept(ride_id, driver_id))
