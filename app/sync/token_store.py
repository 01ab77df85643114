"""Durable incremental-sync cursors kept in secure storage."""

import json
import logging
from typing import Optional

from app.secure_store import SecureStore

logger = logging.getLogger(__name__)

EVENT_TOKENS_KEY = "sync_tokens.events"
CALENDAR_LIST_TOKEN_KEY = "sync_tokens.calendar_list"


class SyncTokenStore:
    """Calendar id to sync token map, plus the calendar-list token.

    Nothing is cached between calls. Write failures are logged and dropped,
    and unreadable data loads as empty: losing a token only costs a full
    window fetch on the next pull.
    """

    def __init__(self, secure_store: SecureStore):
        self.secure_store = secure_store

    async def load(self) -> dict[str, str]:
        try:
            raw = await self.secure_store.get(EVENT_TOKENS_KEY)
            if not raw:
                return {}
            tokens = json.loads(raw.decode("utf-8"))
        except Exception as e:
            logger.warning(f"Could not read sync tokens, starting from scratch: {e}")
            return {}
        if not isinstance(tokens, dict):
            logger.warning("Stored sync tokens are not a map, ignoring them")
            return {}
        return {str(k): str(v) for k, v in tokens.items() if v}

    async def save(self, tokens: dict[str, str]) -> None:
        try:
            payload = json.dumps(tokens, sort_keys=True).encode("utf-8")
            await self.secure_store.set(EVENT_TOKENS_KEY, payload)
        except Exception as e:
            logger.error(f"Failed to persist sync tokens: {e}")

    async def clear(self) -> None:
        try:
            await self.secure_store.delete(EVENT_TOKENS_KEY)
        except Exception as e:
            logger.error(f"Failed to clear sync tokens: {e}")

    async def get(self, calendar_id: str) -> Optional[str]:
        return (await self.load()).get(calendar_id)

    async def set(self, calendar_id: str, token: Optional[str]) -> None:
        """Store or (with ``None``) drop the token of one calendar."""
        tokens = await self.load()
        if token:
            tokens[calendar_id] = token
        else:
            tokens.pop(calendar_id, None)
        await self.save(tokens)

    async def load_calendar_list_token(self) -> Optional[str]:
        try:
            raw = await self.secure_store.get(CALENDAR_LIST_TOKEN_KEY)
        except Exception as e:
            logger.warning(f"Could not read calendar list sync token: {e}")
            return None
        return raw.decode("utf-8") if raw else None

    async def save_calendar_list_token(self, token: str) -> None:
        try:
            await self.secure_store.set(CALENDAR_LIST_TOKEN_KEY, token.encode("utf-8"))
        except Exception as e:
            logger.error(f"Failed to persist calendar list sync token: {e}")

    async def clear_calendar_list_token(self) -> None:
        try:
            await self.secure_store.delete(CALENDAR_LIST_TOKEN_KEY)
        except Exception as e:
            logger.error(f"Failed to clear calendar list sync token: {e}")
