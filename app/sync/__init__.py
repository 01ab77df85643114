"""Sync engine module."""

from app.sync.calendar_list import CalendarListSyncEngine
from app.sync.engine import ConflictResolution, ScheduleSyncEngine, SyncResult

__all__ = [
    "CalendarListSyncEngine",
    "ConflictResolution",
    "ScheduleSyncEngine",
    "SyncResult",
]
