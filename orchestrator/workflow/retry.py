"""
Single retry policy applied at every remote-call boundary.

Built on tenacity. Only TransientRemoteError is retried; each attempt runs
under its own timeout, and a timed-out attempt counts as transient.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from config import settings
from workflow.errors import TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 1.0
    attempt_timeout: Optional[float] = None

    @classmethod
    def from_settings(cls, attempt_timeout: Optional[float] = None,
                      max_attempts: Optional[int] = None) -> 'RetryPolicy':
        return cls(
            max_attempts=max_attempts or settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SEC,
            max_delay=settings.RETRY_MAX_DELAY_SEC,
            jitter=settings.RETRY_JITTER_SEC,
            attempt_timeout=attempt_timeout,
        )

    def with_timeout(self, attempt_timeout: Optional[float]) -> 'RetryPolicy':
        return RetryPolicy(self.max_attempts, self.base_delay, self.max_delay, self.jitter, attempt_timeout)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """
        Run `fn` until it succeeds, raises a non-transient error, or the attempt
        bound is reached. On exhaustion the last TransientRemoteError is raised.

        Args:
            fn: Zero-argument coroutine factory, called once per attempt
            label: Unit label used in log lines
        """
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"[retry] {label}: attempt {retry_state.attempt_number}/{self.max_attempts} "
                f"failed ({exc}), retrying"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay) + wait_random(0, self.jitter),
            retry=retry_if_exception_type(TransientRemoteError),
            before_sleep=_log_retry,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                return await self._run_attempt(fn, label)

    async def _run_attempt(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        if self.attempt_timeout is None:
            return await fn()
        try:
            return await asyncio.wait_for(fn(), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise TransientRemoteError(f"{label} timed out after {self.attempt_timeout}s") from e
