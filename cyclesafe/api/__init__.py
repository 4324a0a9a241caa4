from __future__ import annotations

from fastapi import APIRouter

from .health import router as health_router
from .location import router as location_router
from .incidents import router as incidents_router
from .alerts import router as alerts_router
from .weather import router as weather_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(location_router)
api_router.include_router(incidents_router)
api_router.include_router(alerts_router)
api_router.include_router(weather_router)
