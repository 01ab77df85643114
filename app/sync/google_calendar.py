"""Google Calendar API v3 client over httpx."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import Settings
from app.errors import DecodingError, api_error_for_status, classify_exception
from app.models import ScheduleEntry
from app.sync.rate_limiter import RateLimiter
from app.sync.retry import RetryExecutor

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "(No title)"
UNTITLED_CALENDAR = "Untitled Calendar"
PAGE_SIZE = 250


class AccessTokenProvider(Protocol):
    async def get_access_token(self) -> str: ...


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EventDateTime(_WireModel):
    day: Optional[date] = Field(None, alias="date")
    date_time: Optional[datetime] = Field(None, alias="dateTime")
    time_zone: Optional[str] = Field(None, alias="timeZone")

    def to_utc(self) -> Optional[datetime]:
        if self.date_time is not None:
            value = self.date_time
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        if self.day is not None:
            return datetime.combine(self.day, time.min, tzinfo=timezone.utc)
        return None


class RemoteEvent(_WireModel):
    id: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None
    updated: Optional[datetime] = None
    extended_properties: Optional[dict[str, dict[str, str]]] = Field(
        None, alias="extendedProperties"
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def is_all_day(self) -> bool:
        return self.start is not None and self.start.day is not None

    def has_private_flag(self, tag: str) -> bool:
        private = (self.extended_properties or {}).get("private") or {}
        return private.get(tag) == "true"


class EventPage(_WireModel):
    items: list[RemoteEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(None, alias="nextPageToken")
    next_sync_token: Optional[str] = Field(None, alias="nextSyncToken")


class CalendarListEntry(_WireModel):
    id: str
    summary: Optional[str] = None
    description: Optional[str] = None
    background_color: Optional[str] = Field(None, alias="backgroundColor")
    foreground_color: Optional[str] = Field(None, alias="foregroundColor")
    access_role: Optional[str] = Field(None, alias="accessRole")
    primary: Optional[bool] = None
    selected: Optional[bool] = None
    deleted: Optional[bool] = None


class CalendarListPage(_WireModel):
    items: list[CalendarListEntry] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(None, alias="nextPageToken")
    next_sync_token: Optional[str] = Field(None, alias="nextSyncToken")


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def format_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def entry_to_event_body(entry: ScheduleEntry, sync_tag: str) -> dict[str, Any]:
    """Build an event resource for ``entry``.

    All-day entries use the date form with an exclusive end date.
    """
    if entry.is_all_day:
        start_day = entry.start_at.astimezone(timezone.utc).date()
        end_day = entry.end_at.astimezone(timezone.utc).date()
        if end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        start = {"date": start_day.isoformat()}
        end = {"date": end_day.isoformat()}
    else:
        start = {"dateTime": format_rfc3339(entry.start_at)}
        end = {"dateTime": format_rfc3339(entry.end_at)}

    body: dict[str, Any] = {
        "summary": entry.title,
        "start": start,
        "end": end,
        "extendedProperties": {"private": {sync_tag: "true"}},
    }
    if entry.body is not None:
        body["description"] = entry.body
    return body


def event_to_fields(event: RemoteEvent) -> dict[str, Any]:
    """Entry fields carried by a remote event (times normalized to UTC)."""
    start_at = event.start.to_utc() if event.start else None
    end_at = event.end.to_utc() if event.end else None
    if start_at is None:
        start_at = end_at or event.updated or datetime.now(timezone.utc)
    if end_at is None or end_at < start_at:
        end_at = start_at
    return {
        "title": (event.summary or "").strip() or UNTITLED_EVENT,
        "body": event.description,
        "start_at": start_at,
        "end_at": end_at,
        "is_all_day": event.is_all_day,
    }


def event_snapshot(event: RemoteEvent) -> dict[str, Any]:
    """JSON-safe copy of a remote event kept alongside a conflicting entry."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RemoteCalendarClient:
    """Calendar API wrapper.

    Each request waits on the shared rate limiter and runs inside the retry
    executor. HTTP failures are raised as ``APIError`` subclasses and
    transport failures as ``NetworkError``.
    """

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        settings: Settings,
        rate_limiter: Optional[RateLimiter] = None,
        retry_executor: Optional[RetryExecutor] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.settings = settings
        self.base_url = settings.api_base_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter(settings.rate_limit_min_interval_seconds)
        self.retry_executor = retry_executor or RetryExecutor()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        self.request_count = 0

    @property
    def retry_count(self) -> int:
        return self.retry_executor.retry_count

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Optional[dict]:
        url = f"{self.base_url}{path}"

        async def send() -> Optional[dict]:
            await self.rate_limiter.acquire()
            token = await self.token_provider.get_access_token()
            self.request_count += 1
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TransportError as e:
                raise classify_exception(e) from e

            if not response.is_success:
                raise api_error_for_status(response.status_code, _error_message(response))
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise DecodingError(f"Invalid JSON from {method} {path}", response.status_code) from e

        return await self.retry_executor.execute(send)

    async def list_calendars(
        self,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> CalendarListPage:
        params: dict[str, Any] = {"maxResults": PAGE_SIZE}
        if sync_token:
            params["syncToken"] = sync_token
        if page_token:
            params["pageToken"] = page_token
        data = await self._request("GET", "/users/me/calendarList", params=params)
        return _decode(CalendarListPage, data, "calendar list")

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> EventPage:
        """Fetch one page of events.

        With ``sync_token`` the window and ordering are omitted; the API
        rejects them on incremental requests.
        """
        params: dict[str, Any] = {"singleEvents": "true", "maxResults": PAGE_SIZE}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            if time_min is not None:
                params["timeMin"] = format_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = format_rfc3339(time_max)
            params["orderBy"] = "startTime"
        if page_token:
            params["pageToken"] = page_token
        data = await self._request("GET", _events_path(calendar_id), params=params)
        return _decode(EventPage, data, "event list")

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        data = await self._request("POST", _events_path(calendar_id), json=body)
        return _decode(RemoteEvent, data, "created event")

    async def update_event(self, calendar_id: str, event_id: str, body: dict[str, Any]) -> RemoteEvent:
        data = await self._request(
            "PUT", f"{_events_path(calendar_id)}/{quote(event_id, safe='')}", json=body
        )
        return _decode(RemoteEvent, data, "updated event")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._request("DELETE", f"{_events_path(calendar_id)}/{quote(event_id, safe='')}")


def _events_path(calendar_id: str) -> str:
    return f"/calendars/{quote(calendar_id, safe='')}/events"


def _decode(model: type[BaseModel], data: Optional[dict], what: str):
    if data is None:
        raise DecodingError(f"Empty response for {what}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodingError(f"Malformed {what}: {e.error_count()} validation errors") from e


def _error_message(response: httpx.Response) -> str:
    """Pull the message out of Google's ``{"error": {...}}`` envelope."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error.get("code", ""))
    if isinstance(error, str):
        return error
    return response.text[:200]
