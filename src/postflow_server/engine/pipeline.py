"""Linear multi-step pipeline with per-step retry.

Steps run strictly in list order against one mutable state mapping. The first
step that fails after its retry policy is exhausted aborts the run; nothing
already done is compensated. Re-running a job re-runs the whole pipeline.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, MutableMapping, Optional, Sequence

from postflow_server.errors import PipelineStepError
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.types import LogLevel

from .retry import RetryPolicy, SleepFn

logger = logging.getLogger(__name__)

WorkflowState = MutableMapping[str, Any]
StepFn = Callable[[WorkflowState], Awaitable[Optional[Mapping[str, Any]]]]
CleanupFn = Callable[[WorkflowState], Any]


@dataclass(frozen=True)
class Step:
    name: str
    run: StepFn
    retry_policy: Optional[RetryPolicy] = None


class Pipeline:
    def __init__(
        self,
        name: str,
        steps: Sequence[Step],
        *,
        job_logger: Optional[JobLogger] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names in pipeline {name}: {names}")
        self.name = name
        self.steps: List[Step] = list(steps)
        self.job_logger = job_logger
        self._sleep = sleep

    async def _job_log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        if self.job_logger is not None:
            await self.job_logger.log_if_active(message, level)

    async def _run_step(self, step: Step, state: WorkflowState) -> Optional[Mapping[str, Any]]:
        if step.retry_policy is None:
            return await step.run(state)
        return await step.retry_policy.call(lambda: step.run(state), sleep=self._sleep)

    async def run(self, state: Optional[WorkflowState] = None, cleanup: Optional[CleanupFn] = None) -> WorkflowState:
        """Execute every step in order and return the final state.

        Raises PipelineStepError naming the failing step. `cleanup` runs in
        every case, after the last executed step.
        """
        state = state if state is not None else {}
        try:
            for index, step in enumerate(self.steps, start=1):
                logger.info(f"[{self.name}] step {index}/{len(self.steps)} '{step.name}' started")
                await self._job_log(f"{step.name} started")
                started = time.monotonic()
                try:
                    update = await self._run_step(step, state)
                except Exception as e:
                    logger.error(f"[{self.name}] step '{step.name}' failed: {e}")
                    await self._job_log(f"{step.name} failed: {e}", LogLevel.ERROR)
                    raise PipelineStepError(self.name, step.name, e) from e
                if update:
                    state.update(update)
                elapsed = time.monotonic() - started
                logger.info(f"[{self.name}] step '{step.name}' finished in {elapsed:.2f}s")
                await self._job_log(f"{step.name} finished")
            return state
        finally:
            if cleanup is not None:
                await _run_cleanup(self.name, cleanup, state)


async def _run_cleanup(pipeline: str, cleanup: CleanupFn, state: WorkflowState) -> None:
    try:
        result = cleanup(state)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"[{pipeline}] cleanup failed: {e}")
