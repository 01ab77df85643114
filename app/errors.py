"""Error taxonomy for the sync engine and the shared error boundary."""

import errno
import logging
import socket
from enum import Enum
from typing import Optional

import aiosqlite
import httpx

logger = logging.getLogger(__name__)


class ScheduleSyncError(Exception):
    """Base class for every error the sync engine raises on purpose."""

    retryable = False

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    @property
    def log_description(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class NetworkErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    DNS_ERROR = "dns_error"
    NO_CONNECTION = "no_connection"
    OTHER = "other"


_RETRYABLE_NETWORK_KINDS = {
    NetworkErrorKind.TIMEOUT,
    NetworkErrorKind.CONNECTION_FAILED,
    NetworkErrorKind.NO_CONNECTION,
}


class NetworkError(ScheduleSyncError):
    """Transport-level failure before a response was received."""

    def __init__(self, kind: NetworkErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"Network error ({kind.value}){': ' + detail if detail else ''}")

    @property
    def is_retryable(self) -> bool:
        return self.kind in _RETRYABLE_NETWORK_KINDS


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------


class APIErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    DECODING_ERROR = "decoding_error"
    INVALID_RESPONSE = "invalid_response"
    OTHER = "other"


class APIError(ScheduleSyncError):
    """The remote calendar service answered with an error."""

    kind = APIErrorKind.OTHER

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        kind: Optional[APIErrorKind] = None,
    ):
        if kind is not None:
            self.kind = kind
        self.status_code = status_code
        self.message = message
        text = f"API error ({self.kind.value}"
        if status_code is not None:
            text += f", HTTP {status_code}"
        text += ")"
        if message:
            text += f": {message}"
        super().__init__(text)


class UnauthorizedError(APIError):
    kind = APIErrorKind.UNAUTHORIZED


class ForbiddenError(APIError):
    kind = APIErrorKind.FORBIDDEN


class NotFoundError(APIError):
    kind = APIErrorKind.NOT_FOUND


class TokenExpiredError(APIError):
    """HTTP 410: the sync token is no longer valid and must be discarded."""

    kind = APIErrorKind.TOKEN_EXPIRED


class RateLimitedError(APIError):
    kind = APIErrorKind.RATE_LIMITED
    retryable = True


class ServerError(APIError):
    kind = APIErrorKind.SERVER_ERROR
    retryable = True


class DecodingError(APIError):
    kind = APIErrorKind.DECODING_ERROR


_STATUS_ERRORS = {
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    410: TokenExpiredError,
    429: RateLimitedError,
}


def api_error_for_status(status_code: int, message: Optional[str] = None) -> APIError:
    """Map a non-2xx HTTP status to the matching APIError."""
    error_cls = _STATUS_ERRORS.get(status_code)
    if error_cls is not None:
        return error_cls(message, status_code=status_code)
    if 500 <= status_code <= 599:
        return ServerError(message, status_code=status_code)
    return APIError(message, status_code=status_code, kind=APIErrorKind.OTHER)


# ---------------------------------------------------------------------------
# Local, sync-level and unclassified
# ---------------------------------------------------------------------------


class LocalDataError(ScheduleSyncError):
    """A local store operation failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Local data error during {operation}{detail}")


class SyncError(ScheduleSyncError):
    """Session-level failure synthesized by the engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Sync error: {message}")


class UnknownError(ScheduleSyncError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Unknown error: {cause}")


def _network_kind_for(exc: httpx.TransportError) -> NetworkErrorKind:
    if isinstance(exc, httpx.TimeoutException):
        return NetworkErrorKind.TIMEOUT

    cause = exc.__cause__ or exc.__context__
    while cause is not None:
        if isinstance(cause, socket.gaierror):
            return NetworkErrorKind.DNS_ERROR
        if isinstance(cause, OSError) and cause.errno in (errno.ENETUNREACH, errno.ENETDOWN):
            return NetworkErrorKind.NO_CONNECTION
        cause = cause.__cause__ or cause.__context__

    if isinstance(exc, (httpx.ConnectError, httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return NetworkErrorKind.CONNECTION_FAILED
    return NetworkErrorKind.OTHER


def classify_exception(exc: BaseException) -> ScheduleSyncError:
    """Convert any exception into the sync error taxonomy."""
    if isinstance(exc, ScheduleSyncError):
        return exc
    if isinstance(exc, httpx.TransportError):
        return NetworkError(_network_kind_for(exc), str(exc))
    if isinstance(exc, aiosqlite.Error):
        return LocalDataError("database operation", exc)
    return UnknownError(exc)


# ---------------------------------------------------------------------------
# Error boundary
# ---------------------------------------------------------------------------


class ErrorBoundary:
    """Single place where terminal failures are logged and surfaced.

    The presentation layer subscribes to ``SyncErrorReported`` events on the
    change notifier instead of reading shared state.
    """

    def __init__(self, notifier=None):
        self.notifier = notifier
        self.last_error: Optional[ScheduleSyncError] = None

    async def report(self, error: BaseException, context: Optional[str] = None) -> ScheduleSyncError:
        classified = classify_exception(error)
        self.last_error = classified

        prefix = f"[{context}] " if context else ""
        message = f"{prefix}{classified.log_description}"
        if isinstance(classified, (NetworkError, SyncError)):
            logger.warning(message)
        elif isinstance(classified, (APIError, LocalDataError)):
            logger.error(message)
        else:
            logger.critical(message)

        if self.notifier is not None:
            from app.events import SyncErrorReported

            await self.notifier.publish(SyncErrorReported(error=classified, context=context))
        return classified

    def clear(self) -> None:
        self.last_error = None
