"""Shared dependencies for API routes."""

from fastapi import HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.errors import (
    APIError,
    ForbiddenError,
    LocalDataError,
    NetworkError,
    SyncError,
    UnauthorizedError,
)
from app.services import Services

# Manual sync triggers hit the remote API; keep callers from hammering them
limiter = Limiter(key_func=get_remote_address)
SYNC_TRIGGER_LIMIT = "10/minute"


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


def http_error_for(exc: Exception) -> HTTPException:
    """Map a sync-layer error to the HTTP response a caller should see."""
    if isinstance(exc, UnauthorizedError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, SyncError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, (APIError, NetworkError)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, LocalDataError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")
