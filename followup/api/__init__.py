"""
API package for the follow-up engine.

This package aggregates all API routers to be included in the FastAPI
application. The API is versioned under ``/api/v1``.
"""

from fastapi import APIRouter, Depends
from .v1.connections import router as connections_router
from .v1.mappings import router as mappings_router
from .v1.rules import router as rules_router
from .v1.deliveries import router as deliveries_router
from .v1.followup import router as followup_router
from .v1.health import router as health_router
from ..core.auth import get_current_user
from ..core.rate_limit import rate_limit_dependency

api_router = APIRouter()
protected = [Depends(get_current_user), Depends(rate_limit_dependency)]
api_router.include_router(connections_router, dependencies=protected)
api_router.include_router(mappings_router, dependencies=protected)
api_router.include_router(rules_router, dependencies=protected)
api_router.include_router(deliveries_router, dependencies=protected)
api_router.include_router(followup_router, dependencies=protected)
api_router.include_router(health_router)
