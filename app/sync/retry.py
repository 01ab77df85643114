"""Retry with exponential backoff for remote calls."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.errors import ScheduleSyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(exc: BaseException) -> bool:
    """Transient network failures, 429 and 5xx; never auth, 404, 410 or local errors."""
    return isinstance(exc, ScheduleSyncError) and exc.is_retryable


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_error, compare=False)

    def delay(self, retry_index: int) -> float:
        """Seconds to wait before retry number ``retry_index`` (0-based)."""
        return min(self.initial_delay * (self.backoff_multiplier ** retry_index), self.max_delay)


RetryPolicy.DEFAULT = RetryPolicy()
RetryPolicy.AGGRESSIVE = RetryPolicy(max_retries=5, initial_delay=0.5, backoff_multiplier=2.0, max_delay=10.0)
RetryPolicy.CONSERVATIVE = RetryPolicy(max_retries=3, initial_delay=5.0, backoff_multiplier=3.0, max_delay=60.0)


class RetryExecutor:
    """Run an async operation under a :class:`RetryPolicy`.

    ``retry_count`` accumulates the retries performed across all calls, which
    lets a sync session report how many it needed.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy.DEFAULT
        self._sleep = sleep
        self.retry_count = 0

    def _on_retry(self, retry_state: RetryCallState) -> None:
        self.retry_count += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Attempt {retry_state.attempt_number} failed ({exc}), retrying in {delay:.1f}s"
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """Return the operation's result, or raise its last error once retries run out."""
        policy = policy or self.policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                exp_base=policy.backoff_multiplier,
                max=policy.max_delay,
            ),
            retry=retry_if_exception(policy.retryable),
            before_sleep=self._on_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(operation)
