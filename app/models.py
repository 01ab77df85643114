"""Domain records persisted by the local store."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EntrySource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    DELETED = "deleted"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    FULL = "full"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncLogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ScheduleEntry:
    calendar_id: str
    start_at: datetime
    end_at: datetime
    title: str
    source: EntrySource = EntrySource.LOCAL
    managed_locally: bool = True
    sync_status: SyncStatus = SyncStatus.PENDING
    id: Optional[int] = None
    remote_event_id: Optional[str] = None
    is_all_day: bool = False
    body: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    needs_remote_delete: bool = False
    conflict_remote: Optional[dict[str, Any]] = None
    conflict_detected_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.sync_status == SyncStatus.DELETED

    @property
    def has_conflict(self) -> bool:
        return self.sync_status == SyncStatus.CONFLICT

    def validate(self) -> list[str]:
        """Return invariant violations; an empty list means the entry is storable."""
        problems = []
        if not self.title.strip():
            problems.append("title is empty")
        if self.end_at < self.start_at:
            problems.append("end is before start")
        if self.source == EntrySource.LOCAL and not self.managed_locally:
            problems.append("local entries must be managed locally")
        if self.sync_status == SyncStatus.DELETED and self.deleted_at is None:
            problems.append("deleted entries need deleted_at")
        return problems

    @classmethod
    def from_row(cls, row) -> "ScheduleEntry":
        conflict = row["conflict_remote"]
        return cls(
            id=row["id"],
            calendar_id=row["calendar_id"],
            remote_event_id=row["remote_event_id"],
            start_at=from_db_time(row["start_at"]),
            end_at=from_db_time(row["end_at"]),
            is_all_day=bool(row["is_all_day"]),
            title=row["title"],
            body=row["body"],
            tags=json.loads(row["tags"] or "[]"),
            source=EntrySource(row["source"]),
            managed_locally=bool(row["managed_locally"]),
            sync_status=SyncStatus(row["sync_status"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"]),
            last_synced_at=from_db_time(row["last_synced_at"]),
            remote_updated_at=from_db_time(row["remote_updated_at"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            needs_remote_delete=bool(row["needs_remote_delete"]),
            conflict_remote=json.loads(conflict) if conflict else None,
            conflict_detected_at=from_db_time(row["conflict_detected_at"]),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "remote_event_id": self.remote_event_id,
            "start_at": to_db_time(self.start_at),
            "end_at": to_db_time(self.end_at),
            "is_all_day": self.is_all_day,
            "title": self.title,
            "body": self.body,
            "tags": json.dumps(self.tags, ensure_ascii=False),
            "source": self.source.value,
            "managed_locally": self.managed_locally,
            "sync_status": self.sync_status.value,
            "created_at": to_db_time(self.created_at),
            "updated_at": to_db_time(self.updated_at),
            "deleted_at": to_db_time(self.deleted_at),
            "last_synced_at": to_db_time(self.last_synced_at),
            "remote_updated_at": to_db_time(self.remote_updated_at),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "needs_remote_delete": self.needs_remote_delete,
            "conflict_remote": (
                json.dumps(self.conflict_remote, ensure_ascii=False)
                if self.conflict_remote is not None
                else None
            ),
            "conflict_detected_at": to_db_time(self.conflict_detected_at),
        }


@dataclass
class CalendarInfo:
    calendar_id: str
    summary: str
    description: Optional[str] = None
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None
    access_role: Optional[str] = None
    is_primary: bool = False
    is_visible: bool = True
    is_sync_enabled: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_writable(self) -> bool:
        return self.access_role in ("owner", "writer")

    @classmethod
    def from_row(cls, row) -> "CalendarInfo":
        return cls(
            calendar_id=row["calendar_id"],
            summary=row["summary"],
            description=row["description"],
            background_color=row["background_color"],
            foreground_color=row["foreground_color"],
            access_role=row["access_role"],
            is_primary=bool(row["is_primary"]),
            is_visible=bool(row["is_visible"]),
            is_sync_enabled=bool(row["is_sync_enabled"]),
            updated_at=from_db_time(row["updated_at"]),
        )


@dataclass
class SyncLog:
    direction: SyncDirection
    sync_type: SyncType
    used_sync_token: bool
    started_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
    ended_at: Optional[datetime] = None
    added_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    conflict_count: int = 0
    api_request_count: int = 0
    level: SyncLogLevel = SyncLogLevel.INFO
    error_message: Optional[str] = None
    retry_count: int = 0

    @property
    def duration(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def is_success(self) -> bool:
        return self.ended_at is not None and self.level != SyncLogLevel.ERROR

    @property
    def total_processed(self) -> int:
        return self.added_count + self.updated_count + self.deleted_count

    @classmethod
    def from_row(cls, row) -> "SyncLog":
        return cls(
            id=row["id"],
            started_at=from_db_time(row["started_at"]),
            ended_at=from_db_time(row["ended_at"]),
            direction=SyncDirection(row["direction"]),
            sync_type=SyncType(row["sync_type"]),
            used_sync_token=bool(row["used_sync_token"]),
            added_count=row["added_count"],
            updated_count=row["updated_count"],
            deleted_count=row["deleted_count"],
            conflict_count=row["conflict_count"],
            api_request_count=row["api_request_count"],
            level=SyncLogLevel(row["level"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
        )
