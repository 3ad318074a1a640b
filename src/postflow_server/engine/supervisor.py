"""Supervisor for long-lived interval passes (monitoring crawler, auto-commenter)."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class LoopSupervisor:
    """Runs `tick` every `interval` seconds as an APScheduler interval job.

    start/stop are idempotent and serialized by a lock, so two concurrent
    start calls never register two jobs. The tick runs with max_instances=1
    and coalesce=True. A failing tick is logged and the next interval runs
    as usual. stop() waits up to `shutdown_timeout` for a running tick.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        shutdown_timeout: float = 30.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = interval
        self.shutdown_timeout = shutdown_timeout
        self._tick = tick
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self.state = SupervisorState.STOPPED
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self.state == SupervisorState.RUNNING

    async def _run_tick(self) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            await self._tick()
        except Exception as e:
            logger.error(f"{self.name} tick failed: {e}")
        finally:
            self.ticks += 1
            if task is not None:
                self._in_flight.discard(task)

    async def start(self) -> bool:
        """Register the interval job. Returns False if it was already running."""
        async with self._lock:
            if self.state == SupervisorState.RUNNING:
                logger.warning(f"{self.name} is already running")
                return False
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                self._run_tick,
                "interval",
                seconds=self.interval,
                id=self.name,
                max_instances=1,
                coalesce=True,
                next_run_time=datetime.now(),
            )
            scheduler.start()
            self._scheduler = scheduler
            self.state = SupervisorState.RUNNING
            logger.info(f"{self.name} started (every {self.interval:.0f}s)")
            return True

    async def stop(self) -> bool:
        """Stop firing ticks and wait for a running one. Returns False if it was not running."""
        async with self._lock:
            if self.state == SupervisorState.STOPPED:
                logger.warning(f"{self.name} is not running")
                return False
            scheduler, self._scheduler = self._scheduler, None
            self.state = SupervisorState.STOPPED
            if scheduler is not None:
                scheduler.pause()
                if self._in_flight:
                    _, pending = await asyncio.wait(set(self._in_flight), timeout=self.shutdown_timeout)
                    if pending:
                        logger.warning(f"{self.name}: tick still running after {self.shutdown_timeout:.0f}s")
                scheduler.shutdown(wait=False)
            logger.info(f"{self.name} stopped")
            return True
