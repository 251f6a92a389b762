"""API routes for the portal workflow."""

from fastapi import APIRouter

from .automation import router as automation_router
from .catalog import router as catalog_router
from .phases import router as phases_router

# Main API router
api_router = APIRouter()

api_router.include_router(catalog_router)
api_router.include_router(phases_router)

# Operator administration
api_router.include_router(automation_router)

__all__ = ["api_router"]
