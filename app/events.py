"""Change notification channel for downstream consumers."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class StoreChanged:
    """Net schedule-entry mutations committed by one sync session or pass."""

    added: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    deleted: list[int] = field(default_factory=list)
    purged: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.deleted or self.purged)


@dataclass
class SyncStateSnapshot:
    is_syncing: bool
    last_sync_at: Optional[datetime]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    pending_count: int
    conflict_count: int


@dataclass
class SyncStateChanged:
    snapshot: SyncStateSnapshot


@dataclass
class SyncErrorReported:
    error: Exception
    context: Optional[str] = None


@dataclass
class IndexRebuildRequested:
    reason: str


Subscriber = Callable[[Any], Any]


class ChangeNotifier:
    """Fan out events to subscribers after mutations are committed.

    Subscribers may be plain callables or coroutine functions. A failing
    subscriber is logged and never affects the publisher.
    """

    def __init__(self):
        self._subscribers: list[tuple[Subscriber, Optional[type]]] = []

    def subscribe(self, callback: Subscriber, event_type: Optional[type] = None) -> Callable[[], None]:
        entry = (callback, event_type)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: Any) -> None:
        for callback, event_type in list(self._subscribers):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Subscriber {callback!r} failed on {type(event).__name__}: {e}")
