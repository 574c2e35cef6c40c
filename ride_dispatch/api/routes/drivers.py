"""
Driver endpoints
================

PUT  /api/v1/drivers/{driver_id}/presence  -- go online (with position) or offline
GET  /api/v1/drivers/{driver_id}/presence  -- current presence record
POST /api/v1/drivers/{driver_id}/location  -- raw device fix for the refresh loop
GET  /api/v1/drivers/{driver_id}/offers    -- open offers on pending rides
"""

from fastapi import APIRouter, Depends, Request

from ride_dispatch.api.dependencies import get_dispatch
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    ErrorResponse,
    LocationSampleRequest,
    PresenceResponse,
    PresenceUpdateRequest,
    QueueEntryResponse,
    queue_responses,
)
from ride_dispatch.domain.entities import Coordinates
from ride_dispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.put(
    "/{driver_id}/presence",
    response_model=PresenceResponse,
    summary="Go online or offline",
    responses={404: {"model": ErrorResponse, "description": "Driver never went online."}},
)
@limiter.limit("100/minute")
async def update_presence(
    request: Request,
    driver_id: int,
    body: PresenceUpdateRequest,
    dispatch: DispatchService = Depends(get_dispatch),
):
    if body.online:
        presence = await dispatch.driver_go_online(
            driver_id, Coordinates(body.lat, body.lng)
        )
    else:
        presence = await dispatch.driver_go_offline(driver_id)
    return PresenceResponse.from_entity(presence)


@router.get(
    "/{driver_id}/presence",
    response_model=PresenceResponse,
    summary="Get driver presence",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit("100/minute")
async def get_presence(
    request: Request,
    driver_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return PresenceResponse.from_entity(await dispatch.get_presence(driver_id))


@router.post(
    "/{driver_id}/location",
    status_code=204,
    summary="Report a raw location fix",
)
@limiter.limit("100/minute")
async def report_location(
    request: Request,
    driver_id: int,
    body: LocationSampleRequest,
    dispatch: DispatchService = Depends(get_dispatch),
):
    await dispatch.report_location_sample(driver_id, Coordinates(body.lat, body.lng))


@router.get(
    "/{driver_id}/offers",
    response_model=list[QueueEntryResponse],
    summary="List a driver's open offers",
)
@limiter.limit("100/minute")
async def list_offers(
    request: Request,
    driver_id: int,
    dispatch: DispatchService = Depends(get_dispatch),
):
    return queue_responses(await dispatch.open_offers(driver_id))
