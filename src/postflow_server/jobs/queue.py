"""Polling queue: claims due jobs and hands them to their processors.

Claiming is count-then-conditional-update. The PROCESSING count and the claim
are separate statements; the claim only succeeds while the job is still
REQUEST, so a lost race is a no-op. The per-kind tick never overlaps itself
(the scheduler runs it with max_instances=1), which keeps the count honest
within one process.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from postflow_server.entities import Job, current_timestamp
from postflow_server.errors import PersistenceError, root_message
from postflow_server.processors.base import ProcessorRegistry

from .logs import JobLogger
from .state import RECOVERY_TARGETS
from .store import JobStore
from .types import JobProcessor, JobResult, JobStatus, JobType, LogLevel

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by a restart while running"


class JobQueueProcessor:
    def __init__(
        self,
        store: JobStore,
        registry: ProcessorRegistry,
        job_logger: Optional[JobLogger] = None,
        *,
        deletion_processor: Optional[JobProcessor] = None,
        concurrency_limits: Optional[Dict[str, int]] = None,
        claim_batch_size: int = 10,
        clock: Callable[[], int] = current_timestamp,
    ) -> None:
        self.store = store
        self.registry = registry
        self.job_logger = job_logger or JobLogger(store)
        self.deletion_processor = deletion_processor
        self.concurrency_limits = dict(concurrency_limits or {})
        self.claim_batch_size = claim_batch_size
        self._clock = clock

    def limit_for(self, job_type: JobType | str) -> int:
        """Max PROCESSING jobs of a kind. 0 means unlimited."""
        return self.concurrency_limits.get(JobType(job_type).value, 1)

    async def recover_interrupted_jobs(self) -> int:
        """Fail every job left in a transient state by a previous process."""
        jobs = await self.store.find_by_status(RECOVERY_TARGETS)
        recovered = 0
        for job in jobs:
            target = RECOVERY_TARGETS[JobStatus(job.status)]
            changed = await self.store.transition_status(
                job.id,
                target,
                expected=job.status,
                error_msg=INTERRUPTED_MESSAGE,
                completed_at=self._clock(),
            )
            if changed:
                await self.job_logger.append_log(job.id, INTERRUPTED_MESSAGE, LogLevel.ERROR)
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted jobs")
        return recovered

    async def process_ready_jobs(self, job_type: JobType | str) -> int:
        """One tick for one kind. Returns the number of jobs run to an outcome."""
        job_type = JobType(job_type)
        try:
            limit = self.limit_for(job_type)
            if limit > 0:
                running = await self.store.count_by_status(JobStatus.PROCESSING, job_type)
                free = limit - running
                if free <= 0:
                    logger.debug(f"{job_type.value}: {running} job(s) running, skipping tick")
                    return 0
                batch = min(free, self.claim_batch_size)
            else:
                batch = self.claim_batch_size

            jobs = await self.store.find_ready_jobs(job_type, JobStatus.REQUEST, now=self._clock(), limit=batch)
            if not jobs:
                return 0
            outcomes = await asyncio.gather(*(self._run_job(job) for job in jobs))
            return sum(1 for ran in outcomes if ran)
        except PersistenceError as e:
            logger.error(f"{job_type.value} tick skipped, job store unavailable: {e}")
            return 0

    async def _run_job(self, job: Job) -> bool:
        try:
            claimed = await self.store.transition_status(
                job.id,
                JobStatus.PROCESSING,
                expected=JobStatus.REQUEST,
                started_at=self._clock(),
                completed_at=None,
            )
        except PersistenceError as e:
            logger.error(f"Job {job.id}: job store unavailable while claiming: {e}")
            return False
        if not claimed:
            logger.info(f"Job {job.id} was claimed or changed elsewhere, skipping")
            return False

        try:
            processor = self.registry.get(job.type)
            if processor is None or not processor.can_process(job):
                await self._fail(job.id, f"No processor can handle {job.type} job {job.id}")
                return True

            logger.info(f"Processing {job.type} job {job.id}")
            await self.job_logger.append_log(job.id, "Job started")
            result = await processor.process(job.id)
            await self._complete(job.id, result or JobResult())
            return True
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            try:
                await self._fail(job.id, root_message(e))
            except Exception as fail_error:
                logger.error(f"Job {job.id} left PROCESSING for the recovery sweep: {fail_error}")
                return False
            return True

    async def _complete(self, job_id: int, result: JobResult) -> None:
        changed = await self.store.transition_status(
            job_id,
            JobStatus.COMPLETED,
            expected=JobStatus.PROCESSING,
            completed_at=self._clock(),
            result_msg=result.result_msg,
            result_url=result.result_url,
            error_msg=None,
        )
        if not changed:
            logger.warning(f"Job {job_id} left PROCESSING before it could be completed")
            return
        await self.job_logger.append_log(job_id, result.result_msg or "Job completed")
        logger.info(f"Job {job_id} completed")

    async def _fail(self, job_id: int, message: str) -> None:
        changed = await self.store.transition_status(
            job_id,
            JobStatus.FAILED,
            expected=JobStatus.PROCESSING,
            completed_at=self._clock(),
            error_msg=message,
        )
        if changed:
            await self.job_logger.append_log(job_id, message, LogLevel.ERROR)

    async def process_deletions(self) -> int:
        """Delete published articles whose auto-delete time has passed, one at a time."""
        if self.deletion_processor is None:
            return 0
        try:
            if await self.store.count_by_status(JobStatus.DELETE_PROCESSING) > 0:
                logger.debug("A deletion is already running, skipping tick")
                return 0
            jobs = await self.store.find_due_deletions(now=self._clock(), limit=self.claim_batch_size)
            deleted = 0
            for job in jobs:
                if await self._run_deletion(self.deletion_processor, job):
                    deleted += 1
            return deleted
        except PersistenceError as e:
            logger.error(f"Deletion tick skipped, job store unavailable: {e}")
            return 0

    async def _run_deletion(self, processor: JobProcessor, job: Job) -> bool:
        claimed = await self.store.transition_status(job.id, JobStatus.DELETE_PROCESSING, expected=job.status)
        if not claimed:
            return False

        await self.job_logger.append_log(job.id, "Deletion started")
        try:
            await processor.process(job.id)
        except Exception as e:
            message = f"Deletion failed: {root_message(e)}"
            logger.error(f"Job {job.id}: {message}")
            await self.store.transition_status(
                job.id, JobStatus.DELETE_FAILED, expected=JobStatus.DELETE_PROCESSING, error_msg=message
            )
            await self.job_logger.append_log(job.id, message, LogLevel.ERROR)
            return False

        await self.store.update_payload(job.id, JobType.POST, deleted_at=self._clock())
        await self.store.transition_status(
            job.id, JobStatus.DELETE_COMPLETED, expected=JobStatus.DELETE_PROCESSING, error_msg=None
        )
        await self.job_logger.append_log(job.id, "Article deleted")
        return True
