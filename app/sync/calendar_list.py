"""Calendar catalog reconciliation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.database import get_setting, set_setting
from app.errors import TokenExpiredError
from app.models import CalendarInfo, from_db_time, to_db_time, utcnow
from app.store import LocalStore
from app.sync.google_calendar import (
    UNTITLED_CALENDAR,
    CalendarListEntry,
    RemoteCalendarClient,
)
from app.sync.token_store import SyncTokenStore

logger = logging.getLogger(__name__)

LAST_LIST_SYNC_KEY = "calendar_list.last_synced_at"


@dataclass
class CalendarListSyncResult:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    used_sync_token: bool = False
    token_expired: bool = False


def calendar_from_entry(entry: CalendarListEntry) -> CalendarInfo:
    return CalendarInfo(
        calendar_id=entry.id,
        summary=entry.summary or UNTITLED_CALENDAR,
        description=entry.description,
        background_color=entry.background_color,
        foreground_color=entry.foreground_color,
        access_role=entry.access_role,
        is_primary=bool(entry.primary),
        is_visible=entry.selected if entry.selected is not None else True,
        is_sync_enabled=True,
        updated_at=utcnow(),
    )


class CalendarListSyncEngine:
    """Keeps the local calendar catalog in line with the remote calendar list."""

    def __init__(
        self,
        client: RemoteCalendarClient,
        store: LocalStore,
        token_store: SyncTokenStore,
    ):
        self.client = client
        self.store = store
        self.token_store = token_store

    async def sync(self, force_full: bool = False) -> CalendarListSyncResult:
        try:
            return await self._sync_pass(force_full)
        except TokenExpiredError:
            logger.warning("Calendar list sync token expired, performing full refresh")
            await self.token_store.clear_calendar_list_token()
            result = await self._sync_pass(force_full=True)
            result.token_expired = True
            return result

    async def _sync_pass(self, force_full: bool) -> CalendarListSyncResult:
        sync_token = None if force_full else await self.token_store.load_calendar_list_token()
        result = CalendarListSyncResult(used_sync_token=sync_token is not None)

        items: list[CalendarListEntry] = []
        next_sync_token: Optional[str] = None
        page_token: Optional[str] = None
        while True:
            page = await self.client.list_calendars(
                page_token=page_token,
                sync_token=sync_token if page_token is None else None,
            )
            items.extend(page.items)
            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if not page_token:
                break

        existing = {c.calendar_id: c for c in await self.store.list_calendars()}
        seen: set[str] = set()
        removed: list[str] = []

        for item in items:
            if item.deleted:
                if item.id in existing:
                    removed.append(item.id)
                continue
            seen.add(item.id)
            is_new = item.id not in existing
            await self.store.upsert_calendar(calendar_from_entry(item), is_new=is_new)
            if is_new:
                result.added += 1
            else:
                result.updated += 1

        # A token-based listing only carries changes; absence means nothing then.
        if not result.used_sync_token:
            removed.extend(cid for cid in existing if cid not in seen and cid not in removed)

        if removed:
            result.deleted = await self.store.delete_calendars(removed)
            logger.info(f"Removed {result.deleted} calendars no longer in the remote list")

        if next_sync_token:
            await self.token_store.save_calendar_list_token(next_sync_token)
        await set_setting(self.store.db, LAST_LIST_SYNC_KEY, to_db_time(utcnow()))

        logger.info(
            f"Calendar list sync ({'incremental' if result.used_sync_token else 'full'}): "
            f"{result.added} added, {result.updated} updated, {result.deleted} deleted"
        )
        return result

    async def last_synced_at(self) -> Optional[datetime]:
        return from_db_time(await get_setting(self.store.db, LAST_LIST_SYNC_KEY))

    async def is_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the catalog is empty or was last synced more than ``max_age`` ago."""
        if not await self.store.list_calendars():
            return True
        last = await self.last_synced_at()
        if last is None:
            return True
        return (now or utcnow()) - last > max_age

    async def list_calendars(self) -> list[CalendarInfo]:
        """Primary calendar first, then by name."""
        return await self.store.list_calendars()

    async def set_visibility(self, calendar_id: str, visible: bool) -> Optional[CalendarInfo]:
        return await self.store.set_calendar_flags(calendar_id, is_visible=visible)

    async def set_sync_enabled(self, calendar_id: str, enabled: bool) -> Optional[CalendarInfo]:
        calendar = await self.store.set_calendar_flags(calendar_id, is_sync_enabled=enabled)
        if calendar is not None:
            logger.info(f"Sync for calendar {calendar_id} set to {enabled}")
        return calendar
