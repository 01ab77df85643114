"""Sync status and control API endpoints."""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from app.api.deps import SYNC_TRIGGER_LIMIT, get_services, http_error_for, limiter
from app.errors import ScheduleSyncError
from app.models import ScheduleEntry
from app.services import Services
from app.sync.engine import ConflictResolution, SyncResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    """Current sync state."""
    is_syncing: bool
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_count: int
    conflict_count: int


class SyncResultResponse(BaseModel):
    """Outcome of one sync session."""
    success: bool
    skipped: bool
    added: int
    updated: int
    deleted: int
    conflicts: int
    api_request_count: int
    retry_count: int
    calendars_synced: int
    errors: list[str]


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: Optional[int] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    direction: str
    sync_type: str
    used_sync_token: bool
    added_count: int
    updated_count: int
    deleted_count: int
    conflict_count: int
    api_request_count: int
    level: str
    error_message: Optional[str] = None
    retry_count: int
    duration: float


class SyncStatsResponse(BaseModel):
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    failed_count: int
    warning_count: int
    average_duration: float
    total_api_requests: int
    total_sessions: int


class ConflictEntry(BaseModel):
    """A locally edited entry whose remote copy also changed."""
    id: int
    calendar_id: str
    remote_event_id: Optional[str] = None
    title: str
    body: Optional[str] = None
    start_at: datetime
    end_at: datetime
    is_all_day: bool
    updated_at: datetime
    conflict_detected_at: Optional[datetime] = None
    remote: Optional[dict[str, Any]] = None


class ResolveConflictRequest(BaseModel):
    resolution: ConflictResolution


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        success=result.success,
        skipped=result.skipped,
        added=result.counts.added,
        updated=result.counts.updated,
        deleted=result.counts.deleted,
        conflicts=result.counts.conflicts,
        api_request_count=result.api_request_count,
        retry_count=result.retry_count,
        calendars_synced=result.calendars_synced,
        errors=result.errors,
    )


def _conflict_entry(entry: ScheduleEntry) -> ConflictEntry:
    return ConflictEntry(
        id=entry.id,
        calendar_id=entry.calendar_id,
        remote_event_id=entry.remote_event_id,
        title=entry.title,
        body=entry.body,
        start_at=entry.start_at,
        end_at=entry.end_at,
        is_all_day=entry.is_all_day,
        updated_at=entry.updated_at,
        conflict_detected_at=entry.conflict_detected_at,
        remote=entry.conflict_remote,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(services: Services = Depends(get_services)):
    """Get the current sync state snapshot."""
    snapshot = await services.engine.snapshot()
    return SyncStatusResponse(
        is_syncing=snapshot.is_syncing,
        last_sync_at=snapshot.last_sync_at,
        last_success_at=snapshot.last_success_at,
        last_error=snapshot.last_error,
        pending_count=snapshot.pending_count,
        conflict_count=snapshot.conflict_count,
    )


@router.post("/full", response_model=SyncResultResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_full_sync(request: Request, services: Services = Depends(get_services)):
    """Refresh the calendar list and re-fetch every enabled calendar's window."""
    return _result_response(await services.engine.perform_full_sync())


@router.post("/foreground", response_model=SyncResultResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_foreground_sync(request: Request, services: Services = Depends(get_services)):
    """Incremental pull and push, as on app activation."""
    return _result_response(await services.engine.perform_foreground_sync())


@router.post("/push", response_model=SyncResultResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_push(
    request: Request,
    retry_failed: bool = False,
    services: Services = Depends(get_services),
):
    """Push pending local changes; optionally reset failed pushes first."""
    if retry_failed:
        result = await services.engine.retry_failed_pushes()
    else:
        result = await services.engine.push_pending_changes()
    return _result_response(result)


@router.get("/logs", response_model=list[SyncLogEntry])
async def get_sync_logs(limit: int = 50, services: Services = Depends(get_services)):
    """Get recent sync sessions, newest first."""
    logs = await services.session_logger.recent(max(1, min(limit, services.settings.sync_log_max_count)))
    return [
        SyncLogEntry(
            id=log.id,
            started_at=log.started_at,
            ended_at=log.ended_at,
            direction=log.direction.value,
            sync_type=log.sync_type.value,
            used_sync_token=log.used_sync_token,
            added_count=log.added_count,
            updated_count=log.updated_count,
            deleted_count=log.deleted_count,
            conflict_count=log.conflict_count,
            api_request_count=log.api_request_count,
            level=log.level.value,
            error_message=log.error_message,
            retry_count=log.retry_count,
            duration=log.duration,
        )
        for log in logs
    ]


@router.get("/logs/export", response_class=PlainTextResponse)
async def export_sync_logs(services: Services = Depends(get_services)):
    """Download the retained sync history as text."""
    text = await services.session_logger.export_text()
    return PlainTextResponse(
        text,
        headers={"Content-Disposition": 'attachment; filename="sync-logs.txt"'},
    )


@router.delete("/logs")
async def clear_sync_logs(services: Services = Depends(get_services)):
    await services.session_logger.clear()
    return {"status": "ok"}


@router.get("/stats", response_model=SyncStatsResponse)
async def get_sync_stats(services: Services = Depends(get_services)):
    stats = await services.session_logger.statistics()
    return SyncStatsResponse(
        last_sync_at=stats.last_sync_at,
        last_success_at=stats.last_success_at,
        failed_count=stats.failed_count,
        warning_count=stats.warning_count,
        average_duration=stats.average_duration,
        total_api_requests=stats.total_api_requests,
        total_sessions=stats.total_sessions,
    )


@router.post("/tokens/reset")
async def reset_sync_tokens(services: Services = Depends(get_services)):
    """Forget all sync tokens; the next pulls fetch full windows."""
    await services.engine.reset_sync_tokens()
    return {"status": "ok", "message": "Sync tokens cleared"}


@router.post("/rebuild", response_model=SyncResultResponse)
@limiter.limit("2/minute")
async def rebuild_from_remote(request: Request, services: Services = Depends(get_services)):
    """Drop mirrored entries and rebuild them from the remote calendars."""
    logger.warning("Rebuilding local data from remote calendars")
    return _result_response(await services.engine.rebuild_from_remote())


@router.get("/conflicts", response_model=list[ConflictEntry])
async def list_conflicts(services: Services = Depends(get_services)):
    return [_conflict_entry(e) for e in await services.store.list_conflicts()]


@router.post("/conflicts/{entry_id}/resolve", response_model=ConflictEntry)
async def resolve_conflict(
    entry_id: int,
    body: ResolveConflictRequest,
    services: Services = Depends(get_services),
):
    """Settle a conflict by keeping the local edit or taking the remote version."""
    try:
        entry = await services.engine.resolve_conflict(entry_id, body.resolution)
    except ScheduleSyncError as e:
        raise http_error_for(e)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found")
    return _conflict_entry(entry)
