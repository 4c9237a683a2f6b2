"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import events, search, sources, system

api_router = APIRouter()

api_router.include_router(sources.router, prefix="/agents", tags=["sources"])
api_router.include_router(search.router, prefix="/agents", tags=["search"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
api_router.include_router(system.router, tags=["system"])
