"""
Retry-with-backoff around outbound calls.

Every network call made by a backend goes through RetryExecutor.execute().
The executor retries transport failures and the retryable subset of service
errors, waits geometrically between attempts, and tags the surfaced error
with the operation name and attempt count.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from wfcache.config import Settings
from wfcache.exceptions import CacheError, ServiceError, TransportError
from wfcache.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Throttling and gateway failures; other 4xx/5xx are answers, not hiccups
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


def is_retryable(exc: BaseException) -> bool:
    """Default retryability predicate."""
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, ServiceError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve.

    The wait before retry n (1-based) is
    ``initial_interval_ms * backoff_multiplier ** (n - 1)``, capped at
    ``max_interval_ms``.
    """

    max_attempts: int = 2
    initial_interval_ms: int = 5000
    backoff_multiplier: float = 1.5
    max_interval_ms: int = 60000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.CACHE_RETRY_MAX_ATTEMPTS,
            initial_interval_ms=settings.CACHE_RETRY_INITIAL_INTERVAL_MS,
            backoff_multiplier=settings.CACHE_RETRY_BACKOFF_MULTIPLIER,
            max_interval_ms=settings.CACHE_RETRY_MAX_INTERVAL_MS,
        )

    def wait_seconds(self, attempt: int) -> float:
        """Wait after the given failed attempt (1-based), in seconds."""
        wait_ms = self.initial_interval_ms * self.backoff_multiplier ** (attempt - 1)
        return min(wait_ms, self.max_interval_ms) / 1000


class RetryExecutor:
    """Runs an async operation under a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Attempt budget and backoff curve.
            retryable: Predicate deciding whether an error is worth retrying.
            sleep: Async sleep used between attempts (replaced in tests).
        """
        self.policy = policy or RetryPolicy()
        self._retryable = retryable
        self._sleep = sleep

    def _before_sleep(self, name: str) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{name} failed, retrying",
                attempt=retry_state.attempt_number,
                max_attempts=self.policy.max_attempts,
                wait_seconds=round(wait, 3),
                error=str(error),
            )

        return log_retry

    async def execute(self, name: str, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op`` until it succeeds, fails fatally, or attempts run out.

        Args:
            name: Operation name attached to logs and the surfaced error.
            op: Zero-argument coroutine factory; called once per attempt.

        Returns:
            The result of the first successful attempt.

        Raises:
            CacheError: The last error, with ``operation`` and ``attempts``
                added to its context.
        """
        attempts = 0
        initial = self.policy.initial_interval_ms / 1000
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(self._retryable),
                stop=stop_after_attempt(self.policy.max_attempts),
                wait=wait_exponential(
                    multiplier=initial,
                    exp_base=self.policy.backoff_multiplier,
                    min=0,
                    max=self.policy.max_interval_ms / 1000,
                ),
                sleep=self._sleep,
                before_sleep=self._before_sleep(name),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await op()
        except CacheError as e:
            e.context.setdefault("operation", name)
            e.context["attempts"] = attempts
            raise

        # AsyncRetrying either returns inside the loop or raises
        raise AssertionError(f"{name}: retry loop exited without a result")
