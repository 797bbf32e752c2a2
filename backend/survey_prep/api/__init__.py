"""API router composition for the backend.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from survey_prep.api.routes import admin_router, retrieval_router, typical_router

api_router = APIRouter()
api_router.include_router(admin_router)
api_router.include_router(retrieval_router)
api_router.include_router(typical_router)

__all__ = ["api_router"]
