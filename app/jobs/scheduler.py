"""APScheduler setup for background jobs.

Two task kinds are scheduled as one-shot jobs, each re-submitting its
successor before doing any work:

- ``refresh``: an incremental pull/push cycle, spaced by network quality,
  power state and whether the previous attempt failed
- ``processing``: trash purge plus an index rebuild request, at most once
  per processing interval
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

import aiosqlite
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from app.config import Settings
from app.database import get_setting, set_setting
from app.events import ChangeNotifier
from app.jobs.cleanup import TrashRetentionPolicy, run_processing_pass
from app.models import from_db_time, to_db_time, utcnow
from app.sync.engine import ScheduleSyncEngine

logger = logging.getLogger(__name__)

LAST_REFRESH_KEY = "background.refresh.last"
REFRESH_FAILED_KEY = "background.refresh.failed"
LAST_PROCESSING_KEY = "background.processing.last"


class TaskKind(str, Enum):
    REFRESH = "refresh"
    PROCESSING = "processing"


@dataclass
class TaskRequest:
    kind: TaskKind
    earliest_begin: datetime
    requires_network: bool = True
    requires_external_power: bool = False
    reason: str = ""

    @property
    def job_id(self) -> str:
        return f"background_{self.kind.value}"


@dataclass
class DeviceState:
    network_available: bool = True
    network_expensive: bool = False
    network_constrained: bool = False
    low_power_mode: bool = False
    external_power: bool = True


class DeviceConditions(Protocol):
    def current(self) -> DeviceState: ...


class StaticDeviceConditions:
    """Device conditions fixed at startup (from settings)."""

    def __init__(self, state: DeviceState):
        self.state = state

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticDeviceConditions":
        return cls(DeviceState(
            network_available=settings.network_available,
            network_expensive=settings.network_expensive,
            network_constrained=settings.network_constrained,
            low_power_mode=settings.low_power_mode,
            external_power=settings.external_power,
        ))

    def current(self) -> DeviceState:
        return self.state


def refresh_interval(state: DeviceState, last_failed: bool) -> timedelta:
    """Earliest-begin offset for the next refresh."""
    if state.network_expensive or state.network_constrained:
        minutes, failure_floor = (90 if state.low_power_mode else 60), 90
    elif not state.network_available:
        minutes, failure_floor = 60, 90
    else:
        minutes, failure_floor = (60 if state.low_power_mode else 15), 60

    if last_failed:
        # A failure always backs off past the successful interval
        minutes = max(failure_floor, minutes + 30)
    return timedelta(minutes=minutes)


class BackgroundScheduler:
    """Submits, runs and records the background refresh and processing tasks."""

    def __init__(
        self,
        engine: ScheduleSyncEngine,
        retention_policy: TrashRetentionPolicy,
        db: aiosqlite.Connection,
        settings: Settings,
        conditions: Optional[DeviceConditions] = None,
        notifier: Optional[ChangeNotifier] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.engine = engine
        self.retention_policy = retention_policy
        self.db = db
        self.settings = settings
        self.conditions = conditions or StaticDeviceConditions.from_settings(settings)
        self.notifier = notifier
        self.scheduler = scheduler or AsyncIOScheduler()

    @property
    def processing_interval(self) -> timedelta:
        return timedelta(hours=self.settings.processing_interval_hours)

    async def start(self) -> None:
        """Start the scheduler and submit the first request of each kind."""
        self.scheduler.start()
        await self.schedule_refresh("startup")
        await self.schedule_processing("startup")
        logger.info("Background scheduler started")

    def shutdown(self) -> None:
        """Shutdown the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def last_refresh_failed(self) -> bool:
        return await get_setting(self.db, REFRESH_FAILED_KEY) == "true"

    async def next_refresh_interval(self) -> timedelta:
        return refresh_interval(self.conditions.current(), await self.last_refresh_failed())

    async def schedule_refresh(self, reason: str, now: Optional[datetime] = None) -> TaskRequest:
        interval = await self.next_refresh_interval()
        request = TaskRequest(
            kind=TaskKind.REFRESH,
            earliest_begin=(now or utcnow()) + interval,
            requires_network=True,
            reason=reason,
        )
        self._submit(request)
        logger.info(
            f"Scheduled refresh task (reason: {reason}, interval: {interval.total_seconds():.0f}s)"
        )
        return request

    async def schedule_processing(self, reason: str, now: Optional[datetime] = None) -> TaskRequest:
        """Submit the next processing pass.

        When the last pass completed within the interval, the request waits
        until that interval has run out instead of running early.
        """
        now = now or utcnow()
        interval = self.processing_interval
        earliest = now + interval
        last = from_db_time(await get_setting(self.db, LAST_PROCESSING_KEY))
        if last is not None and now - last < interval:
            earliest = last + interval
            logger.info("Processing completed recently, next pass waits for the full interval")

        request = TaskRequest(
            kind=TaskKind.PROCESSING,
            earliest_begin=earliest,
            requires_network=True,
            requires_external_power=True,
            reason=reason,
        )
        self._submit(request)
        logger.info(f"Scheduled processing task (reason: {reason}, at: {to_db_time(earliest)})")
        return request

    def _submit(self, request: TaskRequest) -> None:
        self.scheduler.add_job(
            self._run_task,
            trigger=DateTrigger(run_date=request.earliest_begin),
            args=[request],
            id=request.job_id,
            name=f"Background {request.kind.value}",
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _run_task(self, request: TaskRequest) -> Optional[bool]:
        if request.kind == TaskKind.REFRESH:
            return await self.handle_refresh(request)
        return await self.handle_processing(request)

    def _constraints_met(self, request: TaskRequest) -> bool:
        state = self.conditions.current()
        if request.requires_network and not state.network_available:
            return False
        if request.requires_external_power and not state.external_power:
            return False
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_refresh(self, request: Optional[TaskRequest] = None) -> Optional[bool]:
        """Run one refresh. Returns the outcome, or None when deferred."""
        request = request or TaskRequest(kind=TaskKind.REFRESH, earliest_begin=utcnow())
        await self.schedule_refresh("reschedule")

        if not self._constraints_met(request):
            logger.info("Background refresh deferred: constraints not met")
            return None

        previously_failed = await self.last_refresh_failed()
        try:
            result = await asyncio.wait_for(
                self.engine.perform_foreground_sync(),
                timeout=self.settings.refresh_deadline_seconds,
            )
            success = result.success
        except asyncio.TimeoutError:
            logger.warning("Background refresh hit its deadline and was cancelled")
            success = False
        except Exception as e:
            logger.exception(f"Background refresh failed: {e}")
            success = False

        await self._record_refresh_result(success)
        if success == previously_failed:
            # Outcome changed the backoff state; replace the pending request
            await self.schedule_refresh("outcome changed")
        return success

    async def handle_processing(self, request: Optional[TaskRequest] = None) -> Optional[bool]:
        request = request or TaskRequest(
            kind=TaskKind.PROCESSING,
            earliest_begin=utcnow(),
            requires_external_power=True,
        )
        await self.schedule_processing("reschedule")

        if not self._constraints_met(request):
            logger.info("Background processing deferred: constraints not met")
            return None

        try:
            await asyncio.wait_for(
                run_processing_pass(self.retention_policy, self.notifier),
                timeout=self.settings.processing_deadline_seconds,
            )
            success = True
        except asyncio.TimeoutError:
            logger.warning("Background processing hit its deadline and was cancelled")
            success = False
        except Exception as e:
            logger.exception(f"Background processing failed: {e}")
            success = False

        if success:
            await set_setting(self.db, LAST_PROCESSING_KEY, to_db_time(utcnow()))
        logger.info(f"Background processing {'completed' if success else 'failed'}")
        return success

    async def _record_refresh_result(self, success: bool) -> None:
        await set_setting(self.db, LAST_REFRESH_KEY, to_db_time(utcnow()))
        await set_setting(self.db, REFRESH_FAILED_KEY, "false" if success else "true")
