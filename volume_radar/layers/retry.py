"""
Retry policy with exponential backoff

    policy = RetryPolicy(max_attempts=3, base_delay=2.0)
    outcome = await policy.run(lambda: adapter.fetch("AAPL"),
                               should_retry=lambda o: o.status == FetchStatus.TRANSIENT,
                               context="yahoo AAPL")

The operation returns a value instead of raising; should_retry decides
whether that value is worth another attempt. The last value is returned
once attempts are exhausted.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base_delay: float) -> Callable[[int], float]:
    """Delay before the retry that follows attempt n (1-based): base * 2**(n-1)."""
    def _delay(attempt: int) -> float:
        return base_delay * (2 ** (attempt - 1))
    return _delay


class RetryPolicy:

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        backoff: Optional[Callable[[int], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or exponential_backoff(base_delay)
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[T], bool],
        context: str = "operation",
    ) -> T:
        attempt = 1
        while True:
            result = await operation()
            if not should_retry(result):
                return result
            if attempt >= self.max_attempts:
                logger.warning(f"{context} failed after {self.max_attempts} attempts")
                return result
            delay = self.backoff(attempt)
            logger.info(
                f"{context} failed (attempt {attempt}/{self.max_attempts}), "
                f"retrying in {delay:.1f}s..."
            )
            await self._sleep(delay)
            attempt += 1
