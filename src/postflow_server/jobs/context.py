"""Job-scoped context propagated through contextvars.

Processors enter `job_context` around a run; anything awaited inside it
(pipeline steps, clients, the job logger) can ask for the current job without
the id being passed down by hand.
"""

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncGenerator, Optional

from postflow_server.errors import JobContextError

from .types import JobType

job_id_var: ContextVar[Optional[int]] = ContextVar("job_id", default=None)
job_type_var: ContextVar[Optional[JobType]] = ContextVar("job_type", default=None)


@asynccontextmanager
async def job_context(job_id: int, job_type: JobType | str) -> AsyncGenerator[None, None]:
    id_token = job_id_var.set(job_id)
    type_token = job_type_var.set(JobType(job_type))
    try:
        yield
    finally:
        job_type_var.reset(type_token)
        job_id_var.reset(id_token)


def current_job_id() -> int:
    job_id = job_id_var.get()
    if job_id is None:
        raise JobContextError("No job context is active")
    return job_id


def current_job_type() -> Optional[JobType]:
    return job_type_var.get()


def in_job_context() -> bool:
    return job_id_var.get() is not None
