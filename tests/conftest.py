"""Pytest configuration and fixtures."""

from __future__ import annotations

import itertools
import json
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_encryption.key"
os.environ["ENABLE_BACKGROUND_TASKS"] = "false"
os.environ["RATE_LIMIT_MIN_INTERVAL_SECONDS"] = "0"

API_PREFIX = "/calendar/v3"


def rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class InjectedFailure:
    method: str
    status: Optional[int]
    times: int
    path_contains: Optional[str] = None


class FakeGoogleCalendar:
    """In-memory stand-in for the Calendar API, served through httpx.MockTransport.

    Supports calendar list and event paging, sync tokens (which can be
    expired to produce 410), event create/update/delete and injected
    failures. Every request is recorded with the monotonic time it arrived.
    """

    def __init__(self, page_size: int = 250):
        self.page_size = page_size
        self.calendars: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []
        self.request_times: list[float] = []
        self.failures: list[InjectedFailure] = []
        self.valid_tokens: set[str] = set()
        self._seq = 0
        self._token_ids = itertools.count(1)
        self._event_ids = itertools.count(1)
        self._last_updated: Optional[datetime] = None
        self.transport = httpx.MockTransport(self.handle)

    # -- fixtures-side mutation -------------------------------------------

    def _tick(self) -> tuple[int, str]:
        self._seq += 1
        now = datetime.now(timezone.utc)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        if self._last_updated is not None and now <= self._last_updated:
            now = self._last_updated + timedelta(milliseconds=1)
        self._last_updated = now
        return self._seq, rfc3339(now)

    def add_calendar(self, calendar_id: str, summary: Optional[str], **extra) -> dict:
        seq, _ = self._tick()
        calendar = {"id": calendar_id, "accessRole": "owner", "_seq": seq, **extra}
        if summary is not None:
            calendar["summary"] = summary
        self.calendars[calendar_id] = calendar
        self.events.setdefault(calendar_id, {})
        return calendar

    def edit_calendar(self, calendar_id: str, **fields) -> dict:
        seq, _ = self._tick()
        calendar = self.calendars[calendar_id]
        calendar.update(fields)
        calendar["_seq"] = seq
        return calendar

    def remove_calendar(self, calendar_id: str) -> None:
        seq, _ = self._tick()
        self.calendars[calendar_id] = {"id": calendar_id, "deleted": True, "_seq": seq}

    def add_event(
        self,
        calendar_id: str,
        summary: Optional[str],
        start: Optional[datetime] = None,
        hours: int = 1,
        event_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict:
        start = start or datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
        event_id = event_id or f"evt{next(self._event_ids)}"
        seq, updated = self._tick()
        event = {
            "id": event_id,
            "status": "confirmed",
            "start": {"dateTime": rfc3339(start)},
            "end": {"dateTime": rfc3339(start + timedelta(hours=hours))},
            "updated": updated,
            "_seq": seq,
        }
        if summary is not None:
            event["summary"] = summary
        if description is not None:
            event["description"] = description
        self.events.setdefault(calendar_id, {})[event_id] = event
        return event

    def edit_event(self, calendar_id: str, event_id: str, **fields) -> dict:
        event = self.events[calendar_id][event_id]
        seq, updated = self._tick()
        event.update(fields)
        event["updated"] = updated
        event["_seq"] = seq
        return event

    def cancel_event(self, calendar_id: str, event_id: str) -> None:
        self.edit_event(calendar_id, event_id, status="cancelled")

    def expire_sync_tokens(self) -> None:
        self.valid_tokens.clear()

    def fail(
        self,
        method: str,
        status: Optional[int],
        times: int = 1,
        path_contains: Optional[str] = None,
    ) -> None:
        """Fail the next ``times`` matching requests (``status=None`` is a connection error)."""
        self.failures.append(InjectedFailure(method.upper(), status, times, path_contains))

    def requests_to(self, method: str, path_contains: str = "") -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and path_contains in unquote(r.url.path)
        ]

    # -- transport ---------------------------------------------------------

    def _issue_token(self) -> str:
        token = f"tok{next(self._token_ids)}-{self._seq}"
        self.valid_tokens.add(token)
        return token

    @staticmethod
    def _public(item: dict) -> dict:
        return {k: v for k, v in item.items() if not k.startswith("_")}

    def _page(self, items: list[dict], params: httpx.QueryParams) -> dict:
        offset = int(params.get("pageToken") or 0)
        chunk = items[offset:offset + self.page_size]
        body: dict[str, Any] = {"items": [self._public(i) for i in chunk]}
        if offset + self.page_size < len(items):
            body["nextPageToken"] = str(offset + self.page_size)
        else:
            body["nextSyncToken"] = self._issue_token()
        return body

    def _token_floor(self, params: httpx.QueryParams) -> Optional[int]:
        token = params.get("syncToken")
        if token is None:
            return None
        if token not in self.valid_tokens:
            raise _Gone()
        return int(token.rsplit("-", 1)[1])

    def _injected(self, request: httpx.Request) -> Optional[httpx.Response]:
        for failure in self.failures:
            if failure.times <= 0 or failure.method != request.method:
                continue
            if failure.path_contains and failure.path_contains not in unquote(request.url.path):
                continue
            failure.times -= 1
            if failure.status is None:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(
                failure.status,
                json={"error": {"code": failure.status, "message": "Injected failure"}},
            )
        return None

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.request_times.append(time.monotonic())

        if not request.headers.get("Authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"error": {"code": 401, "message": "Login Required"}})

        injected = self._injected(request)
        if injected is not None:
            return injected

        raw_path = request.url.raw_path.decode("ascii").split("?")[0]
        if raw_path.startswith(API_PREFIX):
            raw_path = raw_path[len(API_PREFIX):]
        segments = [unquote(s) for s in raw_path.strip("/").split("/")]
        params = request.url.params

        try:
            if segments == ["users", "me", "calendarList"] and request.method == "GET":
                return self._list_calendars(params)
            if len(segments) >= 3 and segments[0] == "calendars" and segments[2] == "events":
                calendar_id = segments[1]
                if calendar_id not in self.events:
                    return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
                if len(segments) == 3 and request.method == "GET":
                    return self._list_events(calendar_id, params)
                if len(segments) == 3 and request.method == "POST":
                    return self._create_event(calendar_id, request)
                if len(segments) == 4:
                    return self._event_item(calendar_id, segments[3], request)
        except _Gone:
            return httpx.Response(410, json={"error": {"code": 410, "message": "Sync token is no longer valid"}})

        return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})

    def _list_calendars(self, params: httpx.QueryParams) -> httpx.Response:
        floor = self._token_floor(params)
        items = list(self.calendars.values())
        if floor is None:
            items = [c for c in items if not c.get("deleted")]
        else:
            items = [c for c in items if c["_seq"] > floor]
        return httpx.Response(200, json=self._page(items, params))

    def _list_events(self, calendar_id: str, params: httpx.QueryParams) -> httpx.Response:
        floor = self._token_floor(params)
        items = list(self.events[calendar_id].values())
        if floor is None:
            items = [e for e in items if e.get("status") != "cancelled"]
            time_min = params.get("timeMin")
            time_max = params.get("timeMax")
            if time_min and time_max:
                lo, hi = parse_rfc3339(time_min), parse_rfc3339(time_max)
                items = [
                    e for e in items
                    if "dateTime" not in e["start"]
                    or (parse_rfc3339(e["end"]["dateTime"]) >= lo
                        and parse_rfc3339(e["start"]["dateTime"]) < hi)
                ]
        else:
            items = [e for e in items if e["_seq"] > floor]
        return httpx.Response(200, json=self._page(items, params))

    def _create_event(self, calendar_id: str, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        event_id = f"evt{next(self._event_ids)}"
        seq, updated = self._tick()
        event = {**body, "id": event_id, "status": "confirmed", "updated": updated, "_seq": seq}
        self.events[calendar_id][event_id] = event
        return httpx.Response(200, json=self._public(event))

    def _event_item(self, calendar_id: str, event_id: str, request: httpx.Request) -> httpx.Response:
        event = self.events[calendar_id].get(event_id)
        if event is None:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        if event.get("status") == "cancelled":
            return httpx.Response(410, json={"error": {"code": 410, "message": "Resource has been deleted"}})

        if request.method == "PUT":
            body = json.loads(request.content)
            seq, updated = self._tick()
            event.clear()
            event.update({**body, "id": event_id, "status": "confirmed", "updated": updated, "_seq": seq})
            return httpx.Response(200, json=self._public(event))
        if request.method == "DELETE":
            self.cancel_event(calendar_id, event_id)
            return httpx.Response(204)
        if request.method == "GET":
            return httpx.Response(200, json=self._public(event))
        return httpx.Response(405)


class _Gone(Exception):
    pass


class StaticTokenProvider:
    def __init__(self, token: str = "test-access-token"):
        self.token = token

    async def get_access_token(self) -> str:
        return self.token


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings():
    """Settings with fast retries and no request spacing."""
    from app.config import Settings

    return Settings(
        database_path=":memory:",
        rate_limit_min_interval_seconds=0,
        enable_background_tasks=False,
    )


@pytest.fixture
def encryption_key():
    from app.encryption import generate_encryption_key

    return generate_encryption_key()


@pytest_asyncio.fixture
async def db():
    """In-memory database with the schema applied."""
    from app.database import close_database, open_database

    connection = await open_database(":memory:")
    yield connection
    await close_database(connection)


@pytest_asyncio.fixture
async def store(db):
    from app.store import LocalStore

    return LocalStore(db)


@pytest_asyncio.fixture
async def secure_store(db, encryption_key):
    from app.encryption import EncryptionManager
    from app.secure_store import SecureStore

    return SecureStore(db, EncryptionManager(encryption_key))


@pytest_asyncio.fixture
async def token_store(secure_store):
    from app.sync.token_store import SyncTokenStore

    return SyncTokenStore(secure_store)


@pytest.fixture
def fake_google():
    fake = FakeGoogleCalendar()
    fake.add_calendar("primary", "Personal", primary=True)
    return fake


@pytest_asyncio.fixture
async def http_client(fake_google):
    client = httpx.AsyncClient(transport=fake_google.transport)
    yield client
    await client.aclose()


@pytest.fixture
def token_provider():
    return StaticTokenProvider()


@pytest.fixture
def retry_executor():
    from app.sync.retry import RetryExecutor

    return RetryExecutor(sleep=no_sleep)


@pytest_asyncio.fixture
async def remote_client(settings, token_provider, http_client, retry_executor):
    from app.sync.google_calendar import RemoteCalendarClient
    from app.sync.rate_limiter import RateLimiter

    return RemoteCalendarClient(
        token_provider,
        settings,
        rate_limiter=RateLimiter(0),
        retry_executor=retry_executor,
        http_client=http_client,
    )


@pytest_asyncio.fixture
async def services(settings, db, encryption_key, http_client, token_provider, retry_executor):
    """Fully wired services talking to the fake calendar service."""
    from app.services import build_services

    built = await build_services(
        settings,
        db=db,
        encryption_key=encryption_key,
        http_client=http_client,
        token_provider=token_provider,
        retry_executor=retry_executor,
    )
    yield built
    await built.tasks.cancel_all()
    built.scheduler.shutdown()


@pytest_asyncio.fixture
async def async_client(services):
    """Create an async test client bound to the test services."""
    from app.api.deps import limiter
    from app.main import app

    limiter.reset()
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.services = None
