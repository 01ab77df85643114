"""Trash retention and the periodic processing pass."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from app.config import ALLOWED_TRASH_RETENTION_DAYS
from app.events import ChangeNotifier, IndexRebuildRequested, StoreChanged
from app.models import ScheduleEntry, utcnow
from app.store import LocalStore

logger = logging.getLogger(__name__)


class TrashRetentionPolicy:
    """Hard-delete soft-deleted entries once they are older than the retention window.

    Retention policy:
    - Soft-deleted entries are kept ``retention_days`` after ``deleted_at``
    - With the trash or auto-purge disabled nothing is purged
    """

    def __init__(
        self,
        store: LocalStore,
        retention_days: int = 30,
        enabled: bool = True,
        auto_purge_enabled: bool = True,
    ):
        if retention_days not in ALLOWED_TRASH_RETENTION_DAYS:
            raise ValueError(f"retention_days must be one of {ALLOWED_TRASH_RETENTION_DAYS}")
        self.store = store
        self.retention_days = retention_days
        self.enabled = enabled
        self.auto_purge_enabled = auto_purge_enabled

    @property
    def is_active(self) -> bool:
        return self.enabled and self.auto_purge_enabled

    def expiration_for(self, entry: ScheduleEntry) -> Optional[datetime]:
        if entry.deleted_at is None:
            return None
        return entry.deleted_at + timedelta(days=self.retention_days)

    async def expired(self, now: Optional[datetime] = None) -> list[ScheduleEntry]:
        now = now or utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        return await self.store.list_deleted_before(cutoff)

    async def purge(self, now: Optional[datetime] = None) -> list[int]:
        """Delete expired trash entries and return their ids."""
        if not self.is_active:
            logger.info("Trash purge disabled, keeping soft-deleted entries")
            return []

        expired = await self.expired(now)
        # Entries whose remote copy still has to be deleted wait for the push.
        purge_ids = [e.id for e in expired if not e.needs_remote_delete]
        await self.store.hard_delete_entries(purge_ids)
        if purge_ids:
            logger.info(
                f"Purged {len(purge_ids)} trash entries older than {self.retention_days} days"
            )
        return purge_ids


async def run_processing_pass(
    policy: TrashRetentionPolicy,
    notifier: Optional[ChangeNotifier] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Purge expired trash, then ask downstream indexes to rebuild."""
    summary = {"purged": 0}

    purged = await policy.purge(now)
    summary["purged"] = len(purged)

    if notifier is not None:
        if purged:
            await notifier.publish(StoreChanged(purged=purged))
        await notifier.publish(IndexRebuildRequested(reason="processing pass"))

    logger.info(f"Processing pass complete: {summary}")
    return summary
