"""
Retry Policy - Bounded retries with a pluggable backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from timeline_ai.exceptions import ProviderError

T = TypeVar("T")

BackoffFn = Callable[[int], float]


def exponential_backoff(base: float = 1.0, factor: float = 2.0, cap: float = 8.0) -> BackoffFn:
    """Delay before retry n (1-based): base * factor**(n-1), capped."""

    def delay(retry_number: int) -> float:
        return min(base * factor ** (retry_number - 1), cap)

    return delay


def fixed_backoff(seconds: float) -> BackoffFn:
    """Same delay before every retry."""
    return lambda _retry_number: seconds


def no_backoff(_retry_number: int) -> float:
    """Retry immediately."""
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between."""

    max_attempts: int = 3
    backoff: BackoffFn = field(default_factory=exponential_backoff)
    retry_on: tuple[type[BaseException], ...] = (ProviderError, TimeoutError)

    def __post_init__(self) -> None:
        """At least one attempt is always made."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """
        Await operation() until it succeeds or attempts run out.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            sleep: Awaitable delay, injectable for tests
            on_retry: Called with (attempt_number, error) before each retry

        Raises:
            The last retryable error once attempts are exhausted, or any
            non-retryable error immediately.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                if on_retry is not None:
                    on_retry(attempt, e)
                delay = self.backoff(attempt)
                if delay > 0:
                    await sleep(delay)
                attempt += 1
