"""Trash (soft-deleted entries) API endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.deps import get_services
from app.events import StoreChanged
from app.jobs.cleanup import run_processing_pass
from app.models import ScheduleEntry, SyncStatus
from app.services import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/trash", tags=["trash"])


class TrashEntry(BaseModel):
    id: int
    calendar_id: str
    title: str
    start_at: datetime
    end_at: datetime
    deleted_at: datetime
    expires_at: Optional[datetime] = None
    pending_remote_delete: bool


class TrashListResponse(BaseModel):
    entries: list[TrashEntry]
    retention_days: int
    auto_purge: bool


class PurgeResponse(BaseModel):
    purged: int


def _trash_entry(entry: ScheduleEntry, services: Services) -> TrashEntry:
    return TrashEntry(
        id=entry.id,
        calendar_id=entry.calendar_id,
        title=entry.title,
        start_at=entry.start_at,
        end_at=entry.end_at,
        deleted_at=entry.deleted_at,
        expires_at=services.retention_policy.expiration_for(entry),
        pending_remote_delete=entry.needs_remote_delete,
    )


async def _get_trashed(services: Services, entry_id: int) -> ScheduleEntry:
    entry = await services.store.get_entry(entry_id)
    if entry is None or entry.sync_status != SyncStatus.DELETED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Entry not in trash"
        )
    return entry


@router.get("", response_model=TrashListResponse)
async def list_trash(services: Services = Depends(get_services)):
    """List soft-deleted entries with their expiry."""
    policy = services.retention_policy
    return TrashListResponse(
        entries=[_trash_entry(e, services) for e in await services.store.list_deleted()],
        retention_days=policy.retention_days,
        auto_purge=policy.is_active,
    )


@router.post("/purge", response_model=PurgeResponse)
async def purge_trash(services: Services = Depends(get_services)):
    """Run the processing pass now: purge expired entries and request index rebuilds."""
    summary = await run_processing_pass(services.retention_policy, services.notifier)
    return PurgeResponse(purged=summary["purged"])


@router.post("/{entry_id}/restore")
async def restore_entry(entry_id: int, services: Services = Depends(get_services)):
    entry = await _get_trashed(services, entry_id)
    entry = await services.store.restore_entry(entry)
    await services.notifier.publish(StoreChanged(added=[entry.id]))
    logger.info(f"Restored entry {entry_id} from trash")
    return {"status": "ok", "sync_status": entry.sync_status.value}


@router.delete("/{entry_id}")
async def delete_permanently(entry_id: int, services: Services = Depends(get_services)):
    """Remove an entry from the trash for good."""
    entry = await _get_trashed(services, entry_id)
    if entry.needs_remote_delete:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Remote copy not deleted yet; push pending changes first"
        )
    await services.store.hard_delete_entries([entry.id])
    await services.notifier.publish(StoreChanged(purged=[entry.id]))
    return {"status": "ok"}
