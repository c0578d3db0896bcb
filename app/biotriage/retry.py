"""Bounded retry policy for provider calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from biotriage.errors import InvalidVerdict, ProviderError

T = TypeVar("T")

RetryHook = Callable[[int, BaseException, float], None]


def is_transient(exc: BaseException) -> bool:
    """Transient provider errors and unusable model output are retryable."""
    if isinstance(exc, InvalidVerdict):
        return True
    if isinstance(exc, ProviderError):
        return exc.transient
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_sec: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff_sec: float = 4.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_sec < 0:
            raise ValueError("backoff_sec must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        if self.backoff_sec <= 0:
            return 0.0
        delay = self.backoff_sec * (self.backoff_multiplier ** max(retry_number - 1, 0))
        return min(delay, self.max_backoff_sec)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryHook | None = None,
    ) -> T:
        """Call `operation`, retrying retryable errors up to `max_attempts` times.

        The last error is re-raised unchanged once attempts are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not self.retryable(exc) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                if delay:
                    await asyncio.sleep(delay)
