"""Token bucket bounding calls into a quota-constrained partner API."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class TokenBucket:
    """Grants at most `capacity` tokens, topping up `refill_amount` every `refill_interval` seconds.

    Refill is computed lazily from the clock on every acquisition. Waiters
    queue on an asyncio.Lock and are served in arrival order.
    """

    def __init__(
        self,
        capacity: int,
        refill_amount: int | None = None,
        refill_interval: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be > 0")
        self.capacity = capacity
        self.refill_amount = refill_amount if refill_amount is not None else capacity
        self.refill_interval = refill_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed_windows = int((now - self._last_refill) // self.refill_interval)
        if elapsed_windows <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + elapsed_windows * self.refill_amount)
        self._last_refill += elapsed_windows * self.refill_interval
        logger.debug(f"Tokens refilled: {self._tokens}/{self.capacity}")

    def _time_until_refill(self) -> float:
        return max(0.0, self._last_refill + self.refill_interval - self._clock())

    async def acquire_token(self) -> None:
        """Consume one token, suspending until the next refill when the bucket is empty."""
        async with self._lock:
            self._refill()
            while self._tokens <= 0:
                wait = self._time_until_refill()
                logger.warning(
                    f"Rate limit reached ({self.capacity} per {self.refill_interval:.0f}s), waiting {wait:.1f}s"
                )
                await self._sleep(wait)
                self._refill()
            self._tokens -= 1
            logger.debug(f"Token used: {self._tokens}/{self.capacity} left")

    def status(self) -> Dict[str, float]:
        self._refill()
        return {
            "tokens": self._tokens,
            "capacity": self.capacity,
            "last_refill": self._last_refill,
        }
