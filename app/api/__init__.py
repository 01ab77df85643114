"""API endpoints module."""

from fastapi import APIRouter

from app.api.calendars import router as calendars_router
from app.api.sync import router as sync_router
from app.api.trash import router as trash_router

api_router = APIRouter(prefix="/api")

api_router.include_router(calendars_router)
api_router.include_router(sync_router)
api_router.include_router(trash_router)

__all__ = ["api_router"]
