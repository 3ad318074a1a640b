"""Retry primitive with none / linear / exponential backoff.

Jitter and the interval cap are off unless configured.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from postflow_server.errors import is_terminal

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


class Backoff(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def compute_interval(
    base_interval: float,
    attempt: int,
    backoff: Backoff,
    max_interval: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """Wait before the retry that follows failed attempt number `attempt` (1-based)."""
    if backoff == Backoff.NONE:
        interval = base_interval
    elif backoff == Backoff.LINEAR:
        interval = base_interval * attempt
    else:
        interval = base_interval * 2 ** (attempt - 1)

    if max_interval is not None:
        interval = min(interval, max_interval)
    if jitter:
        interval += random.uniform(0, interval * jitter)
    return interval


async def retry(
    operation: Callable[[], Awaitable[T]],
    base_interval: float,
    max_attempts: int,
    backoff: Backoff | str = Backoff.NONE,
    *,
    max_interval: Optional[float] = None,
    jitter: float = 0.0,
    give_up: Callable[[BaseException], bool] = is_terminal,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Call `operation` until it succeeds or `max_attempts` calls have failed.

    The last exception is re-raised unchanged. Exceptions for which `give_up`
    returns True are re-raised on the spot. `operation` must be safe to call
    again after a partial failure; nothing here deduplicates side effects.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    backoff = Backoff(backoff)

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if give_up(e) or attempt >= max_attempts:
                raise
            interval = compute_interval(base_interval, attempt, backoff, max_interval, jitter)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed ({e.__class__.__name__}: {e}), retrying in {interval:.2f}s"
            )
            await sleep(interval)
            attempt += 1


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_interval: float = 1.0
    backoff: Backoff = Backoff.EXPONENTIAL
    max_interval: Optional[float] = None
    jitter: float = 0.0

    async def call(self, operation: Callable[[], Awaitable[T]], sleep: SleepFn = asyncio.sleep) -> T:
        return await retry(
            operation,
            self.base_interval,
            self.max_attempts,
            self.backoff,
            max_interval=self.max_interval,
            jitter=self.jitter,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.step_max_attempts,
            base_interval=settings.step_retry_interval,
            backoff=Backoff(settings.step_retry_backoff),
            max_interval=settings.step_retry_max_interval,
            jitter=settings.step_retry_jitter,
        )


def retrying(policy: RetryPolicy) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of `retry` for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await policy.call(lambda: func(*args, **kwargs))

        return wrapper

    return decorator
