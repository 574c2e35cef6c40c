"""
Admin / observability endpoints
===============================

GET /api/v1/admin/pending-rides -- rides still waiting for a driver
GET /api/v1/admin/health        -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from ride_dispatch.api.dependencies import get_dispatch
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import HealthResponse, PendingRidesResponse
from ride_dispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/pending-rides",
    response_model=PendingRidesResponse,
    summary="List rides still waiting for a driver",
)
@limiter.limit("100/minute")
async def get_pending_rides(
    request: Request,
    dispatch: DispatchService = Depends(get_dispatch),
):
    rides = await dispatch.pending_rides()
    return PendingRidesResponse(count=len(rides), ride_ids=[r.id for r in rides])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
