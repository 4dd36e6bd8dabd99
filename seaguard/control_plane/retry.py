"""
seaguard/control_plane/retry.py
────────────────────────────────
RetryPolicy: bounded retries with exponential backoff around an async call.

The policy is a plain value (max retries, backoff curve, retryable-error
predicate, sleep function) composed around the oracle call by the
classification orchestrator and the drift forecaster. Tests inject a
recording sleep and a fake oracle, so the whole policy runs without a
network or a real clock.

Backoff curve
──────────────
    wait before retry n (n = 1, 2, ...) = min(base × 2^(n-1), cap)

With the defaults (base 0.5s, cap 8s, 3 retries) a call that keeps timing
out is attempted four times with waits of 0.5s, 1s and 2s in between.

The mechanics are tenacity's AsyncRetrying; this module only pins down the
policy and its logging.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from seaguard.control_plane.oracle import is_retryable
from seaguard.shared.config import OracleSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_retries:    Retries after the first attempt (attempts = max_retries + 1).
        backoff_base_s: Wait before the first retry.
        backoff_max_s:  Upper bound on any single wait.
        retryable:      Predicate on the raised exception. Non-matching
                        exceptions propagate immediately.
        sleep:          Awaitable sleep. asyncio.sleep in production.
    """
    max_retries: int = 3
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: SleepFn = asyncio.sleep

    @classmethod
    def from_settings(cls, settings: OracleSettings, sleep: SleepFn = asyncio.sleep) -> "RetryPolicy":
        return cls(
            max_retries=settings.retries,
            backoff_base_s=settings.backoff_base_ms / 1000.0,
            backoff_max_s=settings.backoff_max_ms / 1000.0,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_for(self, retry_number: int) -> float:
        """Wait (seconds) before retry `retry_number` (1-based)."""
        if retry_number < 1:
            return 0.0
        return min(self.backoff_base_s * (2 ** (retry_number - 1)), self.backoff_max_s)

    async def call(self, fn: Callable[[], Awaitable[T]], label: str = "call") -> T:
        """
        Await fn() under this policy.

        Returns fn's result, or re-raises the last exception once retries
        are exhausted or a non-retryable exception is raised. Cancellation
        is never retried.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base_s, max=self.backoff_max_s),
            retry=retry_if_exception(self.retryable),
            sleep=self.sleep,
            before_sleep=self._log_retry(label),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await fn()
        return result

    def _log_retry(self, label: str) -> Callable[[RetryCallState], None]:
        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label, state.attempt_number, self.max_attempts, exc, wait,
            )
        return before_sleep
