import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from postflow_server.dependencies import get_job_service
from postflow_server.entities import Job, JobLog
from postflow_server.schemas.jobs import (
    ActionResponse,
    AutoDeleteRequest,
    BulkActionRequest,
    BulkActionResponse,
    CreateCommentJobRequest,
    CreateCoupasJobRequest,
    CreateJobResponse,
    CreatePostJobRequest,
    IntervalRequest,
    JobFilters,
    JobListResponse,
    JobLogResponse,
    JobResponse,
)

from .service import JobService
from .types import JobStatus, JobType

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)


def _job_response(job: Job, latest_log: Optional[JobLog] = None) -> JobResponse:
    response = JobResponse.model_validate(job)
    if latest_log is not None:
        response.latest_log = JobLogResponse.model_validate(latest_log)
    return response


@router.get("")
async def index(
    status: Optional[JobStatus] = Query(None),
    type: Optional[JobType] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    order_by: str = Query("updated_at"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    filters = JobFilters(status=status, type=type, search=search)
    jobs, latest, pagination = await service.list_jobs(filters, page, limit, order_by, order)
    return JobListResponse(data=[_job_response(job, latest.get(job.id)) for job in jobs], pagination=pagination)


@router.post("/post")
async def create_post(
    request: CreatePostJobRequest = Body(...), service: JobService = Depends(get_job_service)
) -> CreateJobResponse:
    return await service.create_post_job(request)


@router.post("/comment")
async def create_comment(
    request: CreateCommentJobRequest = Body(...), service: JobService = Depends(get_job_service)
) -> CreateJobResponse:
    return await service.create_comment_job(request)


@router.post("/coupas")
async def create_coupas(
    request: CreateCoupasJobRequest = Body(...), service: JobService = Depends(get_job_service)
) -> CreateJobResponse:
    return await service.create_coupas_job(request)


# Bulk routes are registered before the /{job_id} routes so "bulk" is never parsed as an id.


@router.post("/bulk/retry")
async def bulk_retry(
    selection: BulkActionRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.retry_jobs(selection)


@router.post("/bulk/delete")
async def bulk_delete(
    selection: BulkActionRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.delete_jobs(selection)


@router.post("/bulk/request")
async def bulk_request(
    selection: BulkActionRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.bulk_pending_to_request(selection)


@router.post("/bulk/retry-delete")
async def bulk_retry_delete(
    selection: BulkActionRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.bulk_retry_delete(selection)


@router.post("/bulk/interval")
async def bulk_interval(
    request: IntervalRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.bulk_apply_interval(request)


@router.post("/bulk/auto-delete")
async def bulk_auto_delete(
    request: AutoDeleteRequest = Body(...), service: JobService = Depends(get_job_service)
) -> BulkActionResponse:
    return await service.bulk_update_auto_delete(request)


@router.get("/{job_id}")
async def get(
    job_id: int = Path(..., description="The ID of the job"), service: JobService = Depends(get_job_service)
) -> JobResponse:
    job = await service.get_job(job_id)
    return _job_response(job, await service.get_latest_job_log(job_id))


@router.delete("/{job_id}")
async def delete(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> ActionResponse:
    return await service.delete_job(job_id)


@router.get("/{job_id}/logs")
async def logs(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> List[JobLogResponse]:
    return [JobLogResponse.model_validate(log) for log in await service.get_job_logs(job_id)]


@router.post("/{job_id}/retry")
async def retry(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> ActionResponse:
    return await service.retry_job(job_id)


@router.post("/{job_id}/pending")
async def to_pending(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> ActionResponse:
    return await service.request_to_pending(job_id)


@router.post("/{job_id}/request")
async def to_request(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> ActionResponse:
    return await service.pending_to_request(job_id)


@router.post("/{job_id}/retry-delete")
async def retry_delete(job_id: int = Path(...), service: JobService = Depends(get_job_service)) -> ActionResponse:
    return await service.retry_delete_job(job_id)
