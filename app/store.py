"""Typed access to schedule entries and calendars.

Every write commits before returning, so a cancelled session keeps whatever
it already applied. Driver failures surface as ``LocalDataError``.
"""

import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from app.errors import LocalDataError
from app.models import (
    CalendarInfo,
    EntrySource,
    ScheduleEntry,
    SyncStatus,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "calendar_id", "remote_event_id", "start_at", "end_at", "is_all_day",
    "title", "body", "tags", "source", "managed_locally", "sync_status",
    "created_at", "updated_at", "deleted_at", "last_synced_at",
    "remote_updated_at", "retry_count", "last_error", "needs_remote_delete",
    "conflict_remote", "conflict_detected_at",
)


class LocalStore:
    """Schedule entry and calendar catalog persistence over aiosqlite."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> list:
        try:
            cursor = await self.db.execute(sql, params)
            return await cursor.fetchall()
        except aiosqlite.Error as e:
            raise LocalDataError(operation, e) from e

    async def _fetchone(self, operation: str, sql: str, params: tuple = ()):
        try:
            cursor = await self.db.execute(sql, params)
            return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise LocalDataError(operation, e) from e

    async def _write(self, operation: str, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        try:
            cursor = await self.db.execute(sql, params)
            await self.db.commit()
            return cursor
        except aiosqlite.Error as e:
            await self._rollback()
            raise LocalDataError(operation, e) from e

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except aiosqlite.Error as e:
            logger.warning(f"Rollback failed: {e}")

    # ------------------------------------------------------------------
    # Schedule entries
    # ------------------------------------------------------------------

    async def get_entry(self, entry_id: int) -> Optional[ScheduleEntry]:
        row = await self._fetchone(
            "get entry",
            "SELECT * FROM schedule_entries WHERE id = ?",
            (entry_id,),
        )
        return ScheduleEntry.from_row(row) if row else None

    async def find_by_remote_id(
        self, calendar_id: str, remote_event_id: str
    ) -> Optional[ScheduleEntry]:
        """Look up an entry, including soft-deleted ones, by its remote key."""
        row = await self._fetchone(
            "find entry by remote id",
            """SELECT * FROM schedule_entries
               WHERE calendar_id = ? AND remote_event_id = ?""",
            (calendar_id, remote_event_id),
        )
        return ScheduleEntry.from_row(row) if row else None

    async def list_entries(
        self,
        calendar_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ScheduleEntry]:
        """List visible (not soft-deleted) entries ordered by start time."""
        sql = "SELECT * FROM schedule_entries WHERE sync_status != 'deleted'"
        params: list = []
        if calendar_id is not None:
            sql += " AND calendar_id = ?"
            params.append(calendar_id)
        if start is not None:
            sql += " AND end_at >= ?"
            params.append(to_db_time(start))
        if end is not None:
            sql += " AND start_at < ?"
            params.append(to_db_time(end))
        sql += " ORDER BY start_at, id"
        rows = await self._fetchall("list entries", sql, tuple(params))
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_pending(self, calendar_id: str) -> list[ScheduleEntry]:
        """Locally managed entries of a calendar waiting to be pushed."""
        rows = await self._fetchall(
            "list pending entries",
            """SELECT * FROM schedule_entries
               WHERE calendar_id = ? AND sync_status = 'pending'
                 AND managed_locally = TRUE
               ORDER BY updated_at, id""",
            (calendar_id,),
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_pending_remote_deletes(self, calendar_id: str) -> list[ScheduleEntry]:
        rows = await self._fetchall(
            "list pending remote deletes",
            """SELECT * FROM schedule_entries
               WHERE calendar_id = ? AND needs_remote_delete = TRUE
                 AND remote_event_id IS NOT NULL
               ORDER BY id""",
            (calendar_id,),
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_failed_pushes(self) -> list[ScheduleEntry]:
        rows = await self._fetchall(
            "list failed pushes",
            """SELECT * FROM schedule_entries
               WHERE sync_status = 'pending' AND retry_count > 0
               ORDER BY id""",
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_conflicts(self) -> list[ScheduleEntry]:
        rows = await self._fetchall(
            "list conflicts",
            """SELECT * FROM schedule_entries
               WHERE sync_status = 'conflict'
               ORDER BY conflict_detected_at, id""",
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_deleted(self) -> list[ScheduleEntry]:
        """Soft-deleted entries (the trash), most recently deleted first."""
        rows = await self._fetchall(
            "list deleted entries",
            """SELECT * FROM schedule_entries
               WHERE sync_status = 'deleted'
               ORDER BY deleted_at DESC, id""",
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def list_deleted_before(self, cutoff: datetime) -> list[ScheduleEntry]:
        rows = await self._fetchall(
            "list expired entries",
            """SELECT * FROM schedule_entries
               WHERE sync_status = 'deleted' AND deleted_at <= ?
               ORDER BY deleted_at, id""",
            (to_db_time(cutoff),),
        )
        return [ScheduleEntry.from_row(r) for r in rows]

    async def count_pending(self) -> int:
        row = await self._fetchone(
            "count pending",
            "SELECT COUNT(*) FROM schedule_entries WHERE sync_status = 'pending'",
        )
        return row[0]

    async def count_conflicts(self) -> int:
        row = await self._fetchone(
            "count conflicts",
            "SELECT COUNT(*) FROM schedule_entries WHERE sync_status = 'conflict'",
        )
        return row[0]

    async def insert_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        problems = entry.validate()
        if problems:
            raise LocalDataError(f"insert entry ({', '.join(problems)})")

        values = entry.to_row()
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        cursor = await self._write(
            "insert entry",
            f"INSERT INTO schedule_entries ({', '.join(_ENTRY_COLUMNS)}) VALUES ({placeholders})",
            tuple(values[c] for c in _ENTRY_COLUMNS),
        )
        entry.id = cursor.lastrowid
        return entry

    async def update_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        if entry.id is None:
            raise LocalDataError("update entry (missing id)")
        problems = entry.validate()
        if problems:
            raise LocalDataError(f"update entry {entry.id} ({', '.join(problems)})")

        values = entry.to_row()
        assignments = ", ".join(f"{c} = ?" for c in _ENTRY_COLUMNS)
        await self._write(
            "update entry",
            f"UPDATE schedule_entries SET {assignments} WHERE id = ?",
            tuple(values[c] for c in _ENTRY_COLUMNS) + (entry.id,),
        )
        return entry

    async def soft_delete_entry(
        self, entry: ScheduleEntry, now: Optional[datetime] = None
    ) -> ScheduleEntry:
        entry.sync_status = SyncStatus.DELETED
        entry.deleted_at = now or utcnow()
        entry.updated_at = entry.deleted_at
        return await self.update_entry(entry)

    async def hard_delete_entries(self, entry_ids: list[int]) -> int:
        if not entry_ids:
            return 0
        placeholders = ", ".join("?" for _ in entry_ids)
        cursor = await self._write(
            "purge entries",
            f"DELETE FROM schedule_entries WHERE id IN ({placeholders})",
            tuple(entry_ids),
        )
        return cursor.rowcount

    async def delete_remote_sourced_entries(self) -> int:
        """Remove every entry mirrored from the remote that has no local edits."""
        cursor = await self._write(
            "delete remote entries",
            """DELETE FROM schedule_entries
               WHERE source = 'remote' AND sync_status IN ('synced', 'deleted')
                 AND needs_remote_delete = FALSE""",
        )
        return cursor.rowcount

    # Editor-facing helpers

    async def create_local_entry(
        self,
        calendar_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
        body: Optional[str] = None,
        is_all_day: bool = False,
        tags: Optional[list[str]] = None,
    ) -> ScheduleEntry:
        """Create an entry authored locally; it is pushed on the next sync."""
        now = utcnow()
        entry = ScheduleEntry(
            calendar_id=calendar_id,
            title=title,
            start_at=start_at,
            end_at=end_at,
            body=body,
            is_all_day=is_all_day,
            tags=tags or [],
            source=EntrySource.LOCAL,
            managed_locally=True,
            sync_status=SyncStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        return await self.insert_entry(entry)

    async def mark_edited(self, entry: ScheduleEntry) -> ScheduleEntry:
        """Record a local edit of ``entry`` so the next push sends it."""
        entry.managed_locally = True
        if entry.sync_status != SyncStatus.CONFLICT:
            entry.sync_status = SyncStatus.PENDING
        entry.updated_at = utcnow()
        return await self.update_entry(entry)

    async def delete_local_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        """Move an entry to the trash, scheduling remote removal if it was pushed."""
        if entry.remote_event_id and entry.managed_locally:
            entry.needs_remote_delete = True
        return await self.soft_delete_entry(entry)

    async def restore_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        """Bring an entry back from the trash.

        Locally managed entries go back to ``pending`` so the next push
        re-creates or re-sends them; mirrored entries return as ``synced``.
        """
        entry.deleted_at = None
        entry.updated_at = utcnow()
        entry.needs_remote_delete = False
        if entry.managed_locally:
            entry.sync_status = SyncStatus.PENDING
        else:
            entry.sync_status = SyncStatus.SYNCED
        return await self.update_entry(entry)

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def get_calendar(self, calendar_id: str) -> Optional[CalendarInfo]:
        row = await self._fetchone(
            "get calendar",
            "SELECT * FROM calendars WHERE calendar_id = ?",
            (calendar_id,),
        )
        return CalendarInfo.from_row(row) if row else None

    async def list_calendars(self) -> list[CalendarInfo]:
        rows = await self._fetchall(
            "list calendars",
            """SELECT * FROM calendars
               ORDER BY is_primary DESC, summary COLLATE NOCASE, calendar_id""",
        )
        return [CalendarInfo.from_row(r) for r in rows]

    async def list_sync_enabled_calendars(self) -> list[CalendarInfo]:
        rows = await self._fetchall(
            "list sync-enabled calendars",
            """SELECT * FROM calendars WHERE is_sync_enabled = TRUE
               ORDER BY is_primary DESC, summary COLLATE NOCASE, calendar_id""",
        )
        return [CalendarInfo.from_row(r) for r in rows]

    async def upsert_calendar(self, calendar: CalendarInfo, is_new: bool) -> None:
        """Insert a calendar, or overwrite its remote-owned fields.

        ``is_visible`` and ``is_sync_enabled`` are user settings: they are
        written on insert only.
        """
        if is_new:
            await self._write(
                "insert calendar",
                """INSERT INTO calendars
                   (calendar_id, summary, description, background_color,
                    foreground_color, access_role, is_primary, is_visible,
                    is_sync_enabled, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    calendar.calendar_id, calendar.summary, calendar.description,
                    calendar.background_color, calendar.foreground_color,
                    calendar.access_role, calendar.is_primary, calendar.is_visible,
                    calendar.is_sync_enabled, to_db_time(calendar.updated_at),
                ),
            )
        else:
            await self._write(
                "update calendar",
                """UPDATE calendars SET
                   summary = ?, description = ?, background_color = ?,
                   foreground_color = ?, access_role = ?, is_primary = ?,
                   updated_at = ?
                   WHERE calendar_id = ?""",
                (
                    calendar.summary, calendar.description,
                    calendar.background_color, calendar.foreground_color,
                    calendar.access_role, calendar.is_primary,
                    to_db_time(calendar.updated_at), calendar.calendar_id,
                ),
            )

    async def set_calendar_flags(
        self,
        calendar_id: str,
        is_visible: Optional[bool] = None,
        is_sync_enabled: Optional[bool] = None,
    ) -> Optional[CalendarInfo]:
        if is_visible is not None:
            await self._write(
                "set calendar visibility",
                "UPDATE calendars SET is_visible = ? WHERE calendar_id = ?",
                (is_visible, calendar_id),
            )
        if is_sync_enabled is not None:
            await self._write(
                "set calendar sync flag",
                "UPDATE calendars SET is_sync_enabled = ? WHERE calendar_id = ?",
                (is_sync_enabled, calendar_id),
            )
        return await self.get_calendar(calendar_id)

    async def delete_calendars(self, calendar_ids: list[str]) -> int:
        if not calendar_ids:
            return 0
        placeholders = ", ".join("?" for _ in calendar_ids)
        cursor = await self._write(
            "delete calendars",
            f"DELETE FROM calendars WHERE calendar_id IN ({placeholders})",
            tuple(calendar_ids),
        )
        return cursor.rowcount
