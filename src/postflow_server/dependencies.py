from typing import Protocol, cast

from fastapi import Request

from postflow_server.jobs.scheduler import JobScheduler
from postflow_server.jobs.service import JobService


class HasJobService(Protocol):
    job_service: JobService


def get_job_service(request: Request) -> JobService:
    state = cast(HasJobService, request.app.state)
    return state.job_service


def get_scheduler(request: Request) -> JobScheduler | None:
    return getattr(request.app.state, "scheduler", None)
