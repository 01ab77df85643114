"""Calendar catalog API endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.api.deps import SYNC_TRIGGER_LIMIT, get_services, http_error_for, limiter
from app.errors import ScheduleSyncError
from app.models import CalendarInfo
from app.services import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendars", tags=["calendars"])


class CalendarResponse(BaseModel):
    """Cached remote calendar."""
    calendar_id: str
    summary: str
    description: Optional[str] = None
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None
    access_role: Optional[str] = None
    is_primary: bool
    is_visible: bool
    is_sync_enabled: bool
    is_writable: bool
    updated_at: datetime


class CalendarUpdate(BaseModel):
    """User settings of a calendar."""
    is_visible: Optional[bool] = None
    is_sync_enabled: Optional[bool] = None


class CalendarRefreshResponse(BaseModel):
    added: int
    updated: int
    deleted: int
    used_sync_token: bool


def _calendar_response(calendar: CalendarInfo) -> CalendarResponse:
    return CalendarResponse(
        calendar_id=calendar.calendar_id,
        summary=calendar.summary,
        description=calendar.description,
        background_color=calendar.background_color,
        foreground_color=calendar.foreground_color,
        access_role=calendar.access_role,
        is_primary=calendar.is_primary,
        is_visible=calendar.is_visible,
        is_sync_enabled=calendar.is_sync_enabled,
        is_writable=calendar.is_writable,
        updated_at=calendar.updated_at,
    )


@router.get("", response_model=list[CalendarResponse])
async def list_calendars(services: Services = Depends(get_services)):
    """List cached calendars, primary first."""
    return [_calendar_response(c) for c in await services.calendar_list.list_calendars()]


@router.post("/refresh", response_model=CalendarRefreshResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def refresh_calendars(
    request: Request,
    full: bool = False,
    services: Services = Depends(get_services),
):
    """Sync the calendar list from the remote service."""
    try:
        result = await services.calendar_list.sync(force_full=full)
    except ScheduleSyncError as e:
        logger.error(f"Calendar list refresh failed: {e}")
        raise http_error_for(e)
    return CalendarRefreshResponse(
        added=result.added,
        updated=result.updated,
        deleted=result.deleted,
        used_sync_token=result.used_sync_token,
    )


@router.patch("/{calendar_id}", response_model=CalendarResponse)
async def update_calendar(
    calendar_id: str,
    update: CalendarUpdate,
    services: Services = Depends(get_services),
):
    """Change visibility or sync participation of a calendar."""
    calendar = await services.store.get_calendar(calendar_id)
    if calendar is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar not found"
        )

    if update.is_visible is not None:
        calendar = await services.calendar_list.set_visibility(calendar_id, update.is_visible)
    if update.is_sync_enabled is not None:
        calendar = await services.calendar_list.set_sync_enabled(calendar_id, update.is_sync_enabled)

    return _calendar_response(calendar)
