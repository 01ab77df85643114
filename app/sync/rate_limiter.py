"""Minimum-interval spacing of outbound requests."""

import asyncio
import time


class RateLimiter:
    """Make callers wait until ``min_interval`` has passed since the last request.

    Waiters are served one at a time, so the request timeline stays serialized
    no matter how many coroutines share the limiter.
    """

    def __init__(self, min_interval: float = 0.1):
        self.min_interval = min_interval
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_request is not None:
                while True:
                    remaining = self._last_request + self.min_interval - time.monotonic()
                    if remaining <= 0:
                        break
                    await asyncio.sleep(remaining)
            self._last_request = time.monotonic()

    @property
    def last_request_at(self) -> float | None:
        return self._last_request
