"""
FastAPI application factory.

* Registers routes for rides, drivers, admin and the realtime streams.
* Starts / stops the background sweep worker via lifespan events.
* Maps dispatch errors onto HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.routes import admin, drivers, realtime, rides
from ride_dispatch.config import settings
from ride_dispatch.domain.exceptions import (
    DispatchError,
    DriverUnavailable,
    InvalidTransition,
    NotOnline,
    PresenceNotFound,
    QueueEntryNotFound,
    RideNotFound,
)
from ride_dispatch.infrastructure.database import get_session_factory
from ride_dispatch.infrastructure.redis_client import get_redis
from ride_dispatch.services.dispatch import DispatchService
from ride_dispatch.workers import sweeper as _sweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[DispatchError], int] = {
    RideNotFound: 404,
    QueueEntryNotFound: 404,
    PresenceNotFound: 404,
    InvalidTransition: 409,
    NotOnline: 409,
    DriverUnavailable: 409,
}


async def _dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400
    )
    if status_code == 409:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dispatch service and start the sweep worker; stop both on shutdown."""
    redis = await get_redis()
    if getattr(app.state, "dispatch", None) is None:
        app.state.dispatch = DispatchService.build(get_session_factory(), redis, settings)
    await _sweeper.start_sweep_loop(app.state.dispatch, redis)
    yield
    await _sweeper.stop_sweep_loop()
    await app.state.dispatch.shutdown()


def create_app(dispatch: Optional[DispatchService] = None) -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch API",
        description=(
            "Matches ride requests to nearby online drivers, runs the "
            "per-ride acceptance queue, and guarantees exactly one driver "
            "wins each ride under concurrent accepts and cancellations."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if dispatch is not None:
        app.state.dispatch = dispatch

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, _dispatch_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(realtime.router, prefix="/api/v1")

    return app
