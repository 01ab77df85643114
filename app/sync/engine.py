"""Core sync engine."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.config import Settings
from app.errors import (
    ErrorBoundary,
    ForbiddenError,
    LocalDataError,
    NotFoundError,
    ScheduleSyncError,
    SyncError,
    TokenExpiredError,
    UnauthorizedError,
    classify_exception,
)
from app.events import ChangeNotifier, StoreChanged, SyncStateChanged, SyncStateSnapshot
from app.models import (
    EntrySource,
    ScheduleEntry,
    SyncDirection,
    SyncLogLevel,
    SyncStatus,
    SyncType,
    utcnow,
)
from app.store import LocalStore
from app.sync.calendar_list import CalendarListSyncEngine
from app.sync.google_calendar import (
    RemoteCalendarClient,
    RemoteEvent,
    entry_to_event_body,
    event_snapshot,
    event_to_fields,
)
from app.sync.session_log import SyncCounts, SyncSessionLogger
from app.sync.tags import extract_tags
from app.sync.token_store import SyncTokenStore

logger = logging.getLogger(__name__)

# Errors that end the whole session; re-authentication happens elsewhere.
_SESSION_FATAL = (UnauthorizedError, ForbiddenError)


class ConflictResolution(str, Enum):
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"


@dataclass
class SyncResult:
    success: bool = True
    skipped: bool = False
    counts: SyncCounts = field(default_factory=SyncCounts)
    api_request_count: int = 0
    retry_count: int = 0
    calendars_synced: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class _Session:
    """Mutable bookkeeping of one running session."""

    requests_before: int
    retries_before: int
    counts: SyncCounts = field(default_factory=SyncCounts)
    changes: StoreChanged = field(default_factory=StoreChanged)
    errors: list[str] = field(default_factory=list)
    calendar_failures: int = 0
    calendars_synced: int = 0

    def record_failure(self, scope: str, error: BaseException) -> None:
        self.errors.append(f"{scope}: {error}")


class ScheduleSyncEngine:
    """Reconciles local schedule entries with remote calendars.

    One session runs at a time. A request that arrives while a session is in
    flight returns a skipped result immediately.
    """

    def __init__(
        self,
        client: RemoteCalendarClient,
        store: LocalStore,
        token_store: SyncTokenStore,
        calendar_list: CalendarListSyncEngine,
        session_logger: SyncSessionLogger,
        settings: Settings,
        notifier: Optional[ChangeNotifier] = None,
        error_boundary: Optional[ErrorBoundary] = None,
    ):
        self.client = client
        self.store = store
        self.token_store = token_store
        self.calendar_list = calendar_list
        self.session_logger = session_logger
        self.settings = settings
        self.notifier = notifier
        self.error_boundary = error_boundary
        self._lock = asyncio.Lock()
        self.last_sync_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def perform_full_sync(self) -> SyncResult:
        """Full catalog refresh, then window pull and push for every enabled calendar."""
        return await self._run_session(
            SyncDirection.FULL, SyncType.FULL, self._full_sync, used_sync_token=False
        )

    async def perform_foreground_sync(self) -> SyncResult:
        """Incremental pull with stored tokens and push; catalog only when stale."""
        return await self._run_session(
            SyncDirection.FULL, SyncType.INCREMENTAL, self._foreground_sync
        )

    async def push_pending_changes(self) -> SyncResult:
        return await self._run_session(
            SyncDirection.PUSH, SyncType.INCREMENTAL, self._push_all, used_sync_token=False
        )

    async def retry_failed_pushes(self) -> SyncResult:
        """Reset retry counters of failed pushes and push again."""
        for entry in await self.store.list_failed_pushes():
            entry.retry_count = 0
            entry.last_error = None
            await self.store.update_entry(entry)
        return await self.push_pending_changes()

    async def rebuild_from_remote(self) -> SyncResult:
        """Drop mirrored entries and sync tokens, then run a full sync.

        Entries with unpushed local changes survive the rebuild.
        """
        async def rebuild(session: _Session) -> None:
            removed = await self.store.delete_remote_sourced_entries()
            logger.info(f"Removed {removed} mirrored entries before rebuild")
            await self.reset_sync_tokens()
            await self._full_sync(session)

        return await self._run_session(
            SyncDirection.FULL, SyncType.FULL, rebuild, used_sync_token=False
        )

    async def reset_sync_tokens(self) -> None:
        await self.token_store.clear()
        await self.token_store.clear_calendar_list_token()
        logger.info("Sync tokens reset; next pulls are full window fetches")

    async def resolve_conflict(
        self, entry_id: int, resolution: ConflictResolution
    ) -> Optional[ScheduleEntry]:
        """Settle a conflicted entry.

        ``USE_LOCAL`` keeps the local edit and queues it for push over the
        remote version. ``USE_REMOTE`` applies the remote snapshot. Returns
        None for an unknown entry.
        """
        async with self._lock:
            entry = await self.store.get_entry(entry_id)
            if entry is None:
                return None
            if entry.sync_status != SyncStatus.CONFLICT:
                raise SyncError(f"Entry {entry_id} has no conflict to resolve")

            remote = (
                RemoteEvent.model_validate(entry.conflict_remote)
                if entry.conflict_remote
                else None
            )
            now = utcnow()
            if resolution == ConflictResolution.USE_REMOTE and remote is not None:
                self._apply_remote(entry, remote, now)
            else:
                entry.sync_status = SyncStatus.PENDING
                entry.updated_at = now
                if remote is not None and remote.updated is not None:
                    entry.remote_updated_at = remote.updated

            entry.conflict_remote = None
            entry.conflict_detected_at = None
            await self.store.update_entry(entry)
            logger.info(f"Resolved conflict on entry {entry_id} with {resolution.value}")

        await self._publish(StoreChanged(updated=[entry_id]))
        await self._publish_state()
        return entry

    async def snapshot(self) -> SyncStateSnapshot:
        return SyncStateSnapshot(
            is_syncing=self.is_syncing,
            last_sync_at=self.last_sync_at,
            last_success_at=self.last_success_at,
            last_error=self.last_error,
            pending_count=await self.store.count_pending(),
            conflict_count=await self.store.count_conflicts(),
        )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    async def _run_session(
        self,
        direction: SyncDirection,
        sync_type: SyncType,
        body: Callable[[_Session], Awaitable[None]],
        used_sync_token: Optional[bool] = None,
    ) -> SyncResult:
        if self._lock.locked():
            logger.info("Sync already in progress, skipping")
            return SyncResult(skipped=True)

        async with self._lock:
            if used_sync_token is None:
                used_sync_token = bool(await self.token_store.load())
            session = _Session(
                requests_before=self.client.request_count,
                retries_before=self.client.retry_count,
            )
            handle = await self.session_logger.start_session(direction, sync_type, used_sync_token)
            self.last_sync_at = handle.started_at
            await self._publish_state()

            result = SyncResult()
            fatal: Optional[ScheduleSyncError] = None
            try:
                await body(session)
            except asyncio.CancelledError:
                await self.session_logger.fail_session(
                    handle,
                    "Sync cancelled",
                    retry_count=self.client.retry_count - session.retries_before,
                    counts=session.counts,
                    api_request_count=self.client.request_count - session.requests_before,
                )
                self.last_error = "Sync cancelled"
                # Rows committed before cancellation stay; tell subscribers about them
                if not session.changes.is_empty:
                    await self._publish(session.changes)
                raise
            except Exception as e:
                fatal = classify_exception(e)

            result.counts = session.counts
            result.api_request_count = self.client.request_count - session.requests_before
            result.retry_count = self.client.retry_count - session.retries_before
            result.calendars_synced = session.calendars_synced
            result.errors = list(session.errors)

            if fatal is not None:
                result.success = False
                result.errors.append(str(fatal))
                self.last_error = str(fatal)
                await self.session_logger.fail_session(
                    handle,
                    fatal,
                    retry_count=result.retry_count,
                    counts=session.counts,
                    api_request_count=result.api_request_count,
                )
            else:
                result.success = session.calendar_failures == 0
                level = SyncLogLevel.WARNING if session.errors else SyncLogLevel.INFO
                await self.session_logger.complete_session(
                    handle,
                    session.counts,
                    result.api_request_count,
                    level=level,
                    error_message="; ".join(session.errors) or None,
                    retry_count=result.retry_count,
                )
                if result.success:
                    self.last_success_at = handle.ended_at
                    self.last_error = None
                else:
                    self.last_error = session.errors[-1]

        if fatal is not None and self.error_boundary is not None:
            await self.error_boundary.report(fatal, f"sync {direction.value}")
        if not session.changes.is_empty:
            await self._publish(session.changes)
        await self._publish_state()
        return result

    async def _publish(self, event) -> None:
        if self.notifier is not None:
            await self.notifier.publish(event)

    async def _publish_state(self) -> None:
        if self.notifier is None:
            return
        try:
            snapshot = await self.snapshot()
        except LocalDataError as e:
            logger.warning(f"Could not build sync state snapshot: {e}")
            return
        await self.notifier.publish(SyncStateChanged(snapshot=snapshot))

    # ------------------------------------------------------------------
    # Session bodies
    # ------------------------------------------------------------------

    async def _full_sync(self, session: _Session) -> None:
        await self._refresh_calendar_list(session, force_full=True)
        for calendar in await self.store.list_sync_enabled_calendars():
            await self._sync_calendar(session, calendar.calendar_id, use_token=False)

    async def _foreground_sync(self, session: _Session) -> None:
        max_age = timedelta(minutes=self.settings.calendar_list_stale_minutes)
        if await self.calendar_list.is_stale(max_age):
            await self._refresh_calendar_list(session, force_full=False)
        for calendar in await self.store.list_sync_enabled_calendars():
            await self._sync_calendar(session, calendar.calendar_id, use_token=True)

    async def _push_all(self, session: _Session) -> None:
        for calendar in await self.store.list_sync_enabled_calendars():
            try:
                await self._push_calendar(session, calendar.calendar_id)
                session.calendars_synced += 1
            except _SESSION_FATAL:
                raise
            except ScheduleSyncError as e:
                logger.error(f"Push failed for calendar {calendar.calendar_id}: {e}")
                session.calendar_failures += 1
                session.record_failure(calendar.calendar_id, e)

    async def _refresh_calendar_list(self, session: _Session, force_full: bool) -> None:
        try:
            await self.calendar_list.sync(force_full=force_full)
        except _SESSION_FATAL:
            raise
        except ScheduleSyncError as e:
            logger.error(f"Calendar list sync failed, using cached catalog: {e}")
            session.calendar_failures += 1
            session.record_failure("calendar list", e)

    async def _sync_calendar(self, session: _Session, calendar_id: str, use_token: bool) -> None:
        try:
            await self._pull_calendar(session, calendar_id, use_token)
            await self._push_calendar(session, calendar_id)
            session.calendars_synced += 1
        except _SESSION_FATAL:
            raise
        except ScheduleSyncError as e:
            logger.error(f"Sync failed for calendar {calendar_id}: {e}")
            session.calendar_failures += 1
            session.record_failure(calendar_id, e)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _pull_calendar(self, session: _Session, calendar_id: str, use_token: bool) -> None:
        sync_token = await self.token_store.get(calendar_id) if use_token else None
        try:
            next_token, merge_failures = await self._pull_pages(session, calendar_id, sync_token)
        except TokenExpiredError:
            if sync_token is None:
                raise
            logger.warning(f"Sync token expired for calendar {calendar_id}, refetching window")
            await self.token_store.set(calendar_id, None)
            next_token, merge_failures = await self._pull_pages(session, calendar_id, None)

        if merge_failures:
            # Keep the previous cursor so the unmerged events are delivered again
            logger.warning(
                f"{merge_failures} events of {calendar_id} not merged, keeping previous sync token"
            )
        elif next_token:
            await self.token_store.set(calendar_id, next_token)

    async def _pull_pages(
        self, session: _Session, calendar_id: str, sync_token: Optional[str]
    ) -> tuple[Optional[str], int]:
        """Walk every page and merge it.

        Returns the final nextSyncToken and the number of events that could
        not be merged.
        """
        time_min = time_max = None
        if sync_token is None:
            now = utcnow()
            time_min = now - timedelta(days=self.settings.sync_window_past_days)
            time_max = now + timedelta(days=self.settings.sync_window_future_days)

        next_sync_token = None
        page_token = None
        merge_failures = 0
        while True:
            page = await self.client.list_events(
                calendar_id,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
                sync_token=sync_token,
            )
            for event in page.items:
                try:
                    await self._merge_event(session, calendar_id, event)
                except LocalDataError as e:
                    logger.error(f"Could not merge event {event.id} of {calendar_id}: {e}")
                    session.record_failure(f"{calendar_id}/{event.id}", e)
                    merge_failures += 1
            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if not page_token:
                return next_sync_token, merge_failures

    async def _merge_event(self, session: _Session, calendar_id: str, event: RemoteEvent) -> None:
        existing = await self.store.find_by_remote_id(calendar_id, event.id)
        now = utcnow()

        if event.is_cancelled:
            if existing is None or existing.is_deleted:
                return
            existing.needs_remote_delete = False
            await self.store.soft_delete_entry(existing, now)
            session.counts.deleted += 1
            session.changes.deleted.append(existing.id)
            return

        if existing is None:
            entry = ScheduleEntry(
                calendar_id=calendar_id,
                remote_event_id=event.id,
                source=EntrySource.REMOTE,
                managed_locally=False,
                sync_status=SyncStatus.SYNCED,
                created_at=now,
                updated_at=event.updated or now,
                last_synced_at=now,
                remote_updated_at=event.updated,
                **event_to_fields(event),
            )
            entry.tags = extract_tags([entry.title, entry.body])
            await self.store.insert_entry(entry)
            session.counts.added += 1
            session.changes.added.append(entry.id)
            return

        # A local delete wins; the push phase removes the remote copy.
        if existing.is_deleted:
            return

        if existing.sync_status == SyncStatus.PENDING:
            if self._remote_changed_since_sync(existing, event):
                existing.sync_status = SyncStatus.CONFLICT
                existing.conflict_remote = event_snapshot(event)
                existing.conflict_detected_at = now
                await self.store.update_entry(existing)
                session.counts.conflicts += 1
                session.changes.updated.append(existing.id)
                logger.warning(
                    f"Conflict on entry {existing.id} ({calendar_id}/{event.id}): "
                    f"edited locally and remotely"
                )
            return

        if existing.sync_status == SyncStatus.CONFLICT:
            # Keep the newest remote version next to the unresolved local edit
            snapshot = event_snapshot(event)
            if snapshot != existing.conflict_remote:
                existing.conflict_remote = snapshot
                await self.store.update_entry(existing)
            return

        baseline = existing.remote_updated_at or existing.updated_at
        if event.updated is not None and event.updated > baseline:
            self._apply_remote(existing, event, now)
            await self.store.update_entry(existing)
            session.counts.updated += 1
            session.changes.updated.append(existing.id)

    @staticmethod
    def _remote_changed_since_sync(entry: ScheduleEntry, event: RemoteEvent) -> bool:
        if event.updated is None:
            return False
        baseline = entry.remote_updated_at or entry.last_synced_at
        return baseline is None or event.updated > baseline

    @staticmethod
    def _apply_remote(entry: ScheduleEntry, event: RemoteEvent, now: datetime) -> None:
        fields = event_to_fields(event)
        entry.title = fields["title"]
        entry.body = fields["body"]
        entry.start_at = fields["start_at"]
        entry.end_at = fields["end_at"]
        entry.is_all_day = fields["is_all_day"]
        entry.tags = extract_tags([entry.title, entry.body])
        entry.sync_status = SyncStatus.SYNCED
        entry.updated_at = event.updated or now
        entry.remote_updated_at = event.updated
        entry.last_synced_at = now
        entry.retry_count = 0
        entry.last_error = None

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _push_calendar(self, session: _Session, calendar_id: str) -> None:
        for entry in await self.store.list_pending_remote_deletes(calendar_id):
            try:
                await self.client.delete_event(calendar_id, entry.remote_event_id)
            except (NotFoundError, TokenExpiredError):
                logger.info(f"Remote event {entry.remote_event_id} already gone")
            except _SESSION_FATAL:
                raise
            except ScheduleSyncError as e:
                await self._record_push_failure(session, entry, e)
                continue
            entry.needs_remote_delete = False
            entry.last_synced_at = utcnow()
            entry.retry_count = 0
            entry.last_error = None
            await self._save_after_push(session, entry)
            session.counts.deleted += 1

        sync_tag = self.settings.calendar_sync_tag
        for entry in await self.store.list_pending(calendar_id):
            body = entry_to_event_body(entry, sync_tag)
            created = entry.remote_event_id is None
            try:
                if created:
                    remote = await self.client.create_event(calendar_id, body)
                else:
                    remote = await self.client.update_event(calendar_id, entry.remote_event_id, body)
            except _SESSION_FATAL:
                raise
            except ScheduleSyncError as e:
                await self._record_push_failure(session, entry, e)
                continue

            now = utcnow()
            entry.remote_event_id = remote.id
            entry.sync_status = SyncStatus.SYNCED
            entry.updated_at = now
            entry.last_synced_at = now
            entry.remote_updated_at = remote.updated or now
            entry.retry_count = 0
            entry.last_error = None
            if not await self._save_after_push(session, entry):
                continue
            if created:
                session.counts.added += 1
            else:
                session.counts.updated += 1
            session.changes.updated.append(entry.id)

    async def _save_after_push(self, session: _Session, entry: ScheduleEntry) -> bool:
        try:
            await self.store.update_entry(entry)
            return True
        except LocalDataError as e:
            logger.error(f"Pushed entry {entry.id} but could not record it: {e}")
            session.record_failure(f"entry {entry.id}", e)
            return False

    async def _record_push_failure(
        self, session: _Session, entry: ScheduleEntry, error: ScheduleSyncError
    ) -> None:
        logger.warning(f"Push of entry {entry.id} failed: {error.log_description}")
        session.record_failure(f"entry {entry.id}", error)
        entry.retry_count += 1
        entry.last_error = str(error)
        try:
            await self.store.update_entry(entry)
        except LocalDataError as e:
            logger.error(f"Could not record push failure for entry {entry.id}: {e}")
