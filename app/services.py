"""Composition root: builds every long-lived service once at startup."""

import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite
import httpx

from app.config import Settings, load_or_create_encryption_key
from app.database import close_database, open_database
from app.encryption import EncryptionManager
from app.errors import ErrorBoundary
from app.events import ChangeNotifier
from app.jobs.cleanup import TrashRetentionPolicy
from app.jobs.scheduler import BackgroundScheduler, DeviceConditions
from app.secure_store import SecureStore, StoredAccessTokenProvider
from app.store import LocalStore
from app.sync.calendar_list import CalendarListSyncEngine
from app.sync.engine import ScheduleSyncEngine
from app.sync.google_calendar import AccessTokenProvider, RemoteCalendarClient
from app.sync.rate_limiter import RateLimiter
from app.sync.retry import RetryExecutor, RetryPolicy
from app.sync.session_log import SyncSessionLogger
from app.sync.token_store import SyncTokenStore
from app.utils.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: aiosqlite.Connection
    store: LocalStore
    secure_store: SecureStore
    token_store: SyncTokenStore
    client: RemoteCalendarClient
    calendar_list: CalendarListSyncEngine
    engine: ScheduleSyncEngine
    session_logger: SyncSessionLogger
    retention_policy: TrashRetentionPolicy
    scheduler: BackgroundScheduler
    notifier: ChangeNotifier
    error_boundary: ErrorBoundary
    tasks: BackgroundTasks


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        initial_delay=settings.retry_initial_delay_seconds,
        backoff_multiplier=settings.retry_backoff_multiplier,
        max_delay=settings.retry_max_delay_seconds,
    )


async def build_services(
    settings: Settings,
    db: Optional[aiosqlite.Connection] = None,
    encryption_key: Optional[bytes] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    token_provider: Optional[AccessTokenProvider] = None,
    conditions: Optional[DeviceConditions] = None,
    retry_executor: Optional[RetryExecutor] = None,
) -> Services:
    """Wire the object graph. Every collaborator can be supplied for tests."""
    if db is None:
        db = await open_database(settings.database_path)
    if encryption_key is None:
        encryption_key = load_or_create_encryption_key(settings.encryption_key_file)

    notifier = ChangeNotifier()
    error_boundary = ErrorBoundary(notifier)
    store = LocalStore(db)
    secure_store = SecureStore(db, EncryptionManager(encryption_key))
    token_store = SyncTokenStore(secure_store)
    if token_provider is None:
        token_provider = StoredAccessTokenProvider(secure_store, settings.access_token_key)

    client = RemoteCalendarClient(
        token_provider,
        settings,
        rate_limiter=RateLimiter(settings.rate_limit_min_interval_seconds),
        retry_executor=retry_executor or RetryExecutor(retry_policy_from_settings(settings)),
        http_client=http_client,
    )
    calendar_list = CalendarListSyncEngine(client, store, token_store)
    session_logger = SyncSessionLogger(db, max_count=settings.sync_log_max_count)
    engine = ScheduleSyncEngine(
        client,
        store,
        token_store,
        calendar_list,
        session_logger,
        settings,
        notifier=notifier,
        error_boundary=error_boundary,
    )
    retention_policy = TrashRetentionPolicy(
        store,
        retention_days=settings.trash_retention_days,
        enabled=settings.trash_enabled,
        auto_purge_enabled=settings.trash_auto_purge_enabled,
    )
    scheduler = BackgroundScheduler(
        engine,
        retention_policy,
        db,
        settings,
        conditions=conditions,
        notifier=notifier,
    )

    return Services(
        settings=settings,
        db=db,
        store=store,
        secure_store=secure_store,
        token_store=token_store,
        client=client,
        calendar_list=calendar_list,
        engine=engine,
        session_logger=session_logger,
        retention_policy=retention_policy,
        scheduler=scheduler,
        notifier=notifier,
        error_boundary=error_boundary,
        tasks=BackgroundTasks(),
    )


async def close_services(services: Services) -> None:
    services.scheduler.shutdown()
    await services.tasks.cancel_all()
    await services.client.aclose()
    await close_database(services.db)
