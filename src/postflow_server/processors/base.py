import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from postflow_server.engine.pipeline import Pipeline, Step
from postflow_server.engine.retry import RetryPolicy, SleepFn
from postflow_server.entities import Job
from postflow_server.errors import TerminalAutomationError
from postflow_server.jobs.context import job_context
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.store import JobStore
from postflow_server.jobs.types import JobProcessor, JobResult, JobType

logger = logging.getLogger(__name__)


class BaseJobProcessor:
    """Loads a job with its payload and runs `run` inside the job's context."""

    job_type: JobType

    def __init__(
        self,
        store: JobStore,
        job_logger: JobLogger,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.store = store
        self.job_logger = job_logger
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def can_process(self, job: Job) -> bool:
        return job.type == self.job_type.value

    async def process(self, job_id: int) -> Optional[JobResult]:
        async with job_context(job_id, self.job_type):
            job = await self.store.get_job(job_id)
            payload = await self.store.get_payload(job_id, self.job_type)
            if payload is None:
                raise TerminalAutomationError(f"Job {job_id} has no {self.job_type.value} payload", code="NO_PAYLOAD")
            return await self.run(job, payload)

    async def run(self, job: Job, payload: Any) -> Optional[JobResult]:
        raise NotImplementedError

    def pipeline(self, name: str, steps: Sequence[Step]) -> Pipeline:
        return Pipeline(name, steps, job_logger=self.job_logger, sleep=self._sleep)


class ProcessorRegistry:
    """Maps each job type to the processor that runs it."""

    def __init__(self, processors: Iterable[JobProcessor] = ()) -> None:
        self._processors: Dict[JobType, JobProcessor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: JobProcessor) -> None:
        job_type = JobType(processor.job_type)
        if job_type in self._processors:
            raise ValueError(f"A processor for {job_type.value} jobs is already registered")
        self._processors[job_type] = processor
        logger.info(f"Registered {type(processor).__name__} for {job_type.value} jobs")

    def get(self, job_type: JobType | str) -> Optional[JobProcessor]:
        try:
            return self._processors.get(JobType(job_type))
        except ValueError:
            return None

    def job_types(self) -> List[JobType]:
        return list(self._processors)

    def __contains__(self, job_type: object) -> bool:
        return self.get(job_type) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._processors)
