"""API router composition for the backend.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from fleet_arena.api.routes import internal_router, rankings_router, sessions_router, stream_router

api_router = APIRouter()
api_router.include_router(stream_router)
api_router.include_router(sessions_router)
api_router.include_router(rankings_router)
api_router.include_router(internal_router)

__all__ = ["api_router"]
