"""APIRouter registration for the submission gateway."""

from __future__ import annotations

from fastapi import APIRouter

from app.routes.gateway import router as gateway_router
from app.routes.maintenance import router as maintenance_router

api_router = APIRouter()
api_router.include_router(gateway_router)
api_router.include_router(maintenance_router)

__all__ = ["api_router"]
