"""Structured history of sync sessions."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import aiosqlite

from app.models import (
    SyncDirection,
    SyncLog,
    SyncLogLevel,
    SyncType,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

# Driver errors, plus ValueError for a connection that is already closed
_STORAGE_ERRORS = (aiosqlite.Error, ValueError)


@dataclass
class SyncCounts:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0

    def merge(self, other: "SyncCounts") -> None:
        self.added += other.added
        self.updated += other.updated
        self.deleted += other.deleted
        self.conflicts += other.conflicts

    @property
    def is_zero(self) -> bool:
        return not (self.added or self.updated or self.deleted or self.conflicts)


@dataclass
class SyncStatistics:
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    failed_count: int = 0
    warning_count: int = 0
    average_duration: float = 0.0
    total_api_requests: int = 0
    total_sessions: int = 0


class SyncSessionLogger:
    """Writes one ``sync_logs`` row per session and keeps the newest ``max_count``.

    Logging a session must never break the session itself, so storage
    failures are reported through the module logger and otherwise ignored.
    """

    def __init__(self, db: aiosqlite.Connection, max_count: int = 100):
        self.db = db
        self.max_count = max_count

    async def start_session(
        self,
        direction: SyncDirection,
        sync_type: SyncType,
        used_sync_token: bool,
    ) -> SyncLog:
        handle = SyncLog(direction=direction, sync_type=sync_type, used_sync_token=used_sync_token)
        try:
            cursor = await self.db.execute(
                """INSERT INTO sync_logs (started_at, direction, sync_type, used_sync_token, level)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    to_db_time(handle.started_at),
                    direction.value,
                    sync_type.value,
                    used_sync_token,
                    SyncLogLevel.INFO.value,
                ),
            )
            await self.db.commit()
            handle.id = cursor.lastrowid
            await self._purge_old()
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to record sync session start: {e}")
        logger.info(f"Started sync: {direction.value} ({sync_type.value})")
        return handle

    async def complete_session(
        self,
        handle: SyncLog,
        counts: SyncCounts,
        api_request_count: int,
        level: SyncLogLevel = SyncLogLevel.INFO,
        error_message: Optional[str] = None,
        retry_count: int = 0,
    ) -> None:
        handle.ended_at = utcnow()
        handle.added_count = counts.added
        handle.updated_count = counts.updated
        handle.deleted_count = counts.deleted
        handle.conflict_count = counts.conflicts
        handle.api_request_count = api_request_count
        handle.level = level
        handle.error_message = error_message
        handle.retry_count = retry_count
        await self._finalize(handle)
        logger.info(
            f"Completed sync: {handle.direction.value} (Added: {counts.added}, "
            f"Updated: {counts.updated}, Deleted: {counts.deleted}, "
            f"Conflicts: {counts.conflicts}, API Requests: {api_request_count}, "
            f"Duration: {handle.duration:.2f}s)"
        )

    async def fail_session(
        self,
        handle: SyncLog,
        error: BaseException | str,
        retry_count: int = 0,
        counts: Optional[SyncCounts] = None,
        api_request_count: int = 0,
    ) -> None:
        """Finalize ``handle`` at error level, keeping any partial counts."""
        counts = counts or SyncCounts()
        handle.ended_at = utcnow()
        handle.added_count = counts.added
        handle.updated_count = counts.updated
        handle.deleted_count = counts.deleted
        handle.conflict_count = counts.conflicts
        handle.api_request_count = api_request_count
        handle.level = SyncLogLevel.ERROR
        handle.error_message = str(error) or type(error).__name__
        handle.retry_count = retry_count
        await self._finalize(handle)
        logger.error(f"Sync failed: {handle.error_message} (Retries: {retry_count})")

    async def _finalize(self, handle: SyncLog) -> None:
        if handle.id is None:
            return
        try:
            await self.db.execute(
                """UPDATE sync_logs SET
                   ended_at = ?, added_count = ?, updated_count = ?,
                   deleted_count = ?, conflict_count = ?, api_request_count = ?,
                   level = ?, error_message = ?, retry_count = ?
                   WHERE id = ?""",
                (
                    to_db_time(handle.ended_at),
                    handle.added_count,
                    handle.updated_count,
                    handle.deleted_count,
                    handle.conflict_count,
                    handle.api_request_count,
                    handle.level.value,
                    handle.error_message,
                    handle.retry_count,
                    handle.id,
                ),
            )
            await self.db.commit()
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to save sync log {handle.id}: {e}")

    async def _purge_old(self) -> None:
        cursor = await self.db.execute(
            """DELETE FROM sync_logs WHERE id NOT IN (
                   SELECT id FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?
               )""",
            (self.max_count,),
        )
        await self.db.commit()
        if cursor.rowcount:
            logger.info(f"Deleted {cursor.rowcount} old sync logs")

    async def recent(self, limit: Optional[int] = None) -> list[SyncLog]:
        """Retained sessions, newest first."""
        try:
            cursor = await self.db.execute(
                "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit if limit is not None else self.max_count,),
            )
            rows = await cursor.fetchall()
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to load sync logs: {e}")
            return []
        return [SyncLog.from_row(r) for r in rows]

    async def clear(self) -> None:
        try:
            await self.db.execute("DELETE FROM sync_logs")
            await self.db.commit()
            logger.info("Cleared all sync logs")
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to clear sync logs: {e}")

    async def statistics(self) -> SyncStatistics:
        logs = await self.recent()
        stats = SyncStatistics(total_sessions=len(logs))
        if not logs:
            return stats

        stats.last_sync_at = logs[0].started_at
        stats.last_success_at = next((log.started_at for log in logs if log.is_success), None)
        stats.failed_count = sum(1 for log in logs if log.level == SyncLogLevel.ERROR)
        stats.warning_count = sum(1 for log in logs if log.level == SyncLogLevel.WARNING)

        successful = [log for log in logs if log.is_success]
        if successful:
            stats.average_duration = sum(log.duration for log in successful) / len(successful)
        stats.total_api_requests = sum(log.api_request_count for log in logs)
        return stats

    async def export_text(self, now: Optional[datetime] = None) -> str:
        """Human-readable report of every retained session."""
        logs = await self.recent()
        lines = [
            "Schedule Sync Logs",
            f"Generated: {to_db_time(now or utcnow())}",
            f"Total Logs: {len(logs)}",
            "=" * 80,
            "",
        ]

        for index, log in enumerate(logs):
            lines.append(f"## Log #{len(logs) - index}")
            lines.append("")
            lines.append(f"Status: {log.level.value.upper()}")
            lines.append(f"Started: {to_db_time(log.started_at)}")
            if log.ended_at is not None:
                lines.append(f"Ended: {to_db_time(log.ended_at)}")
            lines.append(f"Duration: {log.duration:.2f}s")
            lines.append(f"Direction: {log.direction.value}")
            lines.append(f"Type: {log.sync_type.value}")

            if log.total_processed > 0 or log.conflict_count > 0:
                lines.append("")
                lines.append("Processed Entries:")
                lines.append(f"  Added: {log.added_count}")
                lines.append(f"  Updated: {log.updated_count}")
                lines.append(f"  Deleted: {log.deleted_count}")
                if log.conflict_count:
                    lines.append(f"  Conflicts: {log.conflict_count}")
                lines.append(f"  Total: {log.total_processed}")

            if log.api_request_count > 0:
                lines.append(f"API Requests: {log.api_request_count}")
            lines.append(f"syncToken: {'Used' if log.used_sync_token else 'Not used'}")
            if log.retry_count > 0:
                lines.append(f"Retries: {log.retry_count}")
            if log.error_message:
                lines.append("")
                lines.append("Error:")
                lines.append(f"  {log.error_message}")

            lines.append("")
            lines.append("-" * 80)
            lines.append("")

        return "\n".join(lines)
