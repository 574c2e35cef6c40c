"""FastAPI dependency injection helpers."""

from fastapi import Request

from ride_dispatch.services.dispatch import DispatchService


def get_dispatch(request: Request) -> DispatchService:
    """The process-wide ``DispatchService`` built at startup."""
    return request.app.state.dispatch
