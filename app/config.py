"""Application configuration management."""

import os
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

from app.encryption import generate_encryption_key


ALLOWED_TRASH_RETENTION_DAYS = (7, 30, 60)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/schedule-sync.db"

    # Encryption (secure token storage)
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    log_level: str = "info"

    # Remote calendar API
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    access_token_key: str = "google_access_token"
    http_timeout_seconds: float = 30.0
    calendar_sync_tag: str = "scheduleSyncManaged"

    # Rate limiting and retries for outbound requests
    rate_limit_min_interval_seconds: float = 0.1
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0

    # Sync window (days)
    sync_window_past_days: int = 30
    sync_window_future_days: int = 90

    # Calendar list is refreshed on foreground sync once older than this
    calendar_list_stale_minutes: int = 60

    # Sync history
    sync_log_max_count: int = 100

    # Trash
    trash_enabled: bool = True
    trash_auto_purge_enabled: bool = True
    trash_retention_days: int = 30

    # Background tasks
    enable_background_tasks: bool = True
    processing_interval_hours: int = 12
    refresh_deadline_seconds: float = 30.0
    processing_deadline_seconds: float = 300.0

    # Device conditions reported to the background scheduler
    network_available: bool = True
    network_expensive: bool = False
    network_constrained: bool = False
    low_power_mode: bool = False
    external_power: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("trash_retention_days")
    @classmethod
    def _check_retention_days(cls, value: int) -> int:
        if value not in ALLOWED_TRASH_RETENTION_DAYS:
            raise ValueError(
                f"trash_retention_days must be one of {ALLOWED_TRASH_RETENTION_DAYS}"
            )
        return value

    @field_validator("sync_window_past_days", "sync_window_future_days")
    @classmethod
    def _check_window(cls, value: int) -> int:
        return max(1, value)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_or_create_encryption_key(key_file: str) -> bytes:
    """Load the encryption key from file, generating one on first run."""
    if not os.path.exists(key_file):
        directory = os.path.dirname(key_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        key = generate_encryption_key()
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        return key

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines/carriage returns that might be added by text editors
        while key and key[-1:] in (b'\n', b'\r'):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key
