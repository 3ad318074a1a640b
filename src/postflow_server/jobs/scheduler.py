import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .queue import JobQueueProcessor

logger = logging.getLogger(__name__)


class JobScheduler:
    """Drives the queue with APScheduler interval jobs.

    start() runs the recovery sweep before any tick is registered. Each tick
    runs with max_instances=1 and coalesce=True, so a slow tick is never
    overlapped by its own next run. stop() stops firing new ticks and waits
    for in-flight ones to finish.
    """

    def __init__(
        self,
        queue: JobQueueProcessor,
        *,
        ready_interval: float = 10.0,
        deletion_interval: float = 60.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self.queue = queue
        self.ready_interval = ready_interval
        self.deletion_interval = deletion_interval
        self.shutdown_timeout = shutdown_timeout
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _tracked(self, name: str, tick: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def run(*args: Any) -> Any:
            task = asyncio.current_task()
            if task is not None:
                self._in_flight.add(task)
            try:
                return await tick(*args)
            except Exception as e:
                logger.error(f"Tick {name} failed: {e}")
                return None
            finally:
                if task is not None:
                    self._in_flight.discard(task)

        return run

    async def start(self) -> bool:
        async with self._lock:
            if self._scheduler is not None:
                logger.warning("Job scheduler already running")
                return False

            await self.queue.recover_interrupted_jobs()

            scheduler = AsyncIOScheduler()
            now = datetime.now()
            for job_type in self.queue.registry.job_types():
                scheduler.add_job(
                    self._tracked(f"ready:{job_type.value}", self.queue.process_ready_jobs),
                    "interval",
                    seconds=self.ready_interval,
                    args=[job_type],
                    id=f"ready:{job_type.value}",
                    max_instances=1,
                    coalesce=True,
                    next_run_time=now,
                )
            if self.queue.deletion_processor is not None:
                scheduler.add_job(
                    self._tracked("deletions", self.queue.process_deletions),
                    "interval",
                    seconds=self.deletion_interval,
                    id="deletions",
                    max_instances=1,
                    coalesce=True,
                    next_run_time=now,
                )
            scheduler.start()
            self._scheduler = scheduler
            logger.info(
                f"Job scheduler started: {len(self.queue.registry)} job types every {self.ready_interval:.0f}s"
            )
            return True

    async def stop(self) -> bool:
        async with self._lock:
            if self._scheduler is None:
                return False
            scheduler, self._scheduler = self._scheduler, None
            scheduler.pause()
            if self._in_flight:
                logger.info(f"Waiting for {len(self._in_flight)} running tick(s)")
                _, pending = await asyncio.wait(set(self._in_flight), timeout=self.shutdown_timeout)
                if pending:
                    logger.warning(f"{len(pending)} tick(s) still running after {self.shutdown_timeout:.0f}s")
            scheduler.shutdown(wait=False)
            logger.info("Job scheduler stopped")
            return True
