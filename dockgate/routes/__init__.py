"""API routers for Dockgate."""

from fastapi import APIRouter

from dockgate.routes import containers, events

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(containers.router, prefix="/containers", tags=["containers"])
api_router.include_router(events.router, tags=["events"])

__all__ = ["api_router"]
