"""Administrative operations on jobs: creation, retry, deletion and bulk edits.

Every status change goes through the store's validated transitions. Bulk
operations never fail as a whole because some selected jobs are in the wrong
state; those jobs are reported as skipped.
"""

import logging
import math
import random
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from postflow_server.entities import Job, JobLog, current_timestamp
from postflow_server.errors import InvalidStateTransitionError, JobNotFoundError, ValidationError
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
    Pagination,
    job_payload,
)

from .logs import JobLogger
from .state import RETRYABLE_STATES, is_transient
from .store import JobStore
from .types import JobStatus, JobType

logger = logging.getLogger(__name__)


def _require_url(value: str, field: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field} must be an http(s) URL: {value!r}", field=field)


class JobService:
    def __init__(
        self,
        store: JobStore,
        job_logger: Optional[JobLogger] = None,
        *,
        clock: Callable[[], int] = current_timestamp,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.job_logger = job_logger or JobLogger(store)
        self._clock = clock
        self._rng = rng or random.Random()

    # Creation

    async def _create(
        self,
        job_type: JobType,
        request: CreatePostJobRequest | CreateCommentJobRequest | CreateCoupasJobRequest,
        subject: str,
    ) -> Job:
        if request.scheduled_at is not None and request.scheduled_at < 0:
            raise ValidationError("scheduled_at must be an epoch timestamp", field="scheduled_at")
        job = await self.store.create_job(
            job_type,
            job_payload(request),
            scheduled_at=request.scheduled_at,
            priority=request.priority,
            status=JobStatus.PENDING if request.pending else JobStatus.REQUEST,
            subject=request.subject or subject,
            desc=request.desc,
        )
        await self.job_logger.append_log(job.id, "Job created")
        return job

    async def create_post_job(self, request: CreatePostJobRequest) -> CreateJobResponse:
        _require_url(request.gallery_url, "gallery_url")
        if not request.title.strip():
            raise ValidationError("title is required", field="title")
        if not request.login_id and not (request.nickname and request.password):
            raise ValidationError("Either login credentials or nickname and password are required", field="nickname")
        job = await self._create(JobType.POST, request, request.title)
        return CreateJobResponse(job_id=job.id)

    async def create_comment_job(self, request: CreateCommentJobRequest) -> CreateJobResponse:
        for url in request.post_urls:
            _require_url(url, "post_urls")
        if not request.comment_text.strip():
            raise ValidationError("comment_text is required", field="comment_text")
        job = await self._create(JobType.COMMENT, request, request.comment_text[:50])
        return CreateJobResponse(job_id=job.id)

    async def create_coupas_job(self, request: CreateCoupasJobRequest) -> CreateJobResponse:
        """Create an affiliate job, or return the existing one for the same post URL."""
        _require_url(request.post_url, "post_url")
        _require_url(request.wordpress_url, "wordpress_url")

        existing = await self.store.find_coupas_job_by_post_url(request.post_url)
        if existing is not None:
            logger.info(f"Coupas job for {request.post_url} already exists: {existing.id}")
            return CreateJobResponse(
                job_id=existing.id, is_existing=True, message="A job for this post already exists"
            )

        job = await self._create(JobType.COUPAS, request, request.post_url)
        return CreateJobResponse(job_id=job.id)

    # Single job actions

    async def get_job(self, job_id: int) -> Job:
        return await self.store.get_job(job_id)

    async def retry_job(self, job_id: int) -> ActionResponse:
        job = await self.store.get_job(job_id)
        if JobStatus(job.status) not in RETRYABLE_STATES:
            raise InvalidStateTransitionError(job_id, job.status, JobStatus.REQUEST.value)
        await self._transition(job, JobStatus.REQUEST, error_msg=None, result_msg=None, completed_at=None)
        await self.job_logger.append_log(job_id, "Retry requested")
        return ActionResponse(message=f"Job {job_id} will be retried")

    async def delete_job(self, job_id: int) -> ActionResponse:
        job = await self.store.get_job(job_id)
        if is_transient(job.status):
            raise InvalidStateTransitionError(job_id, job.status, "deleted")
        if not await self.store.delete_job(job_id):
            raise JobNotFoundError(job_id)
        return ActionResponse(message=f"Job {job_id} deleted")

    async def pending_to_request(self, job_id: int) -> ActionResponse:
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.PENDING.value:
            raise InvalidStateTransitionError(job_id, job.status, JobStatus.REQUEST.value)
        await self._transition(job, JobStatus.REQUEST)
        return ActionResponse(message=f"Job {job_id} moved to request")

    async def request_to_pending(self, job_id: int) -> ActionResponse:
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.REQUEST.value:
            raise InvalidStateTransitionError(job_id, job.status, JobStatus.PENDING.value)
        await self._transition(job, JobStatus.PENDING)
        return ActionResponse(message=f"Job {job_id} moved to pending")

    async def retry_delete_job(self, job_id: int) -> ActionResponse:
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.DELETE_FAILED.value:
            raise InvalidStateTransitionError(job_id, job.status, JobStatus.DELETE_REQUEST.value)
        payload = await self.store.get_payload(job_id, JobType.POST) if job.type == JobType.POST.value else None
        if payload is None or not payload.result_url:
            raise ValidationError(f"Job {job_id} has no published article to delete", field="result_url")
        await self._request_deletion(job)
        return ActionResponse(message=f"Deletion of job {job_id} will be retried")

    async def _transition(self, job: Job, target: JobStatus, **fields: object) -> None:
        if not await self.store.transition_status(job.id, target, expected=job.status, **fields):
            # Someone changed the job between our read and the conditional update.
            current = await self.store.get_job(job.id)
            raise InvalidStateTransitionError(job.id, current.status, target.value)

    async def _request_deletion(self, job: Job) -> None:
        await self._transition(job, JobStatus.DELETE_REQUEST, error_msg=None)
        await self.store.update_payload(job.id, JobType.POST, delete_at=self._clock(), deleted_at=None)
        await self.job_logger.append_log(job.id, "Deletion retry requested")

    # Bulk actions

    async def retry_jobs(self, selection: BulkActionRequest) -> BulkActionResponse:
        """Re-queue the FAILED jobs of a selection; everything else is reported, not touched."""
        jobs = await self.store.bulk_select(selection)
        affected, skipped, errors = [], [], []
        for job in jobs:
            if job.status != JobStatus.FAILED.value:
                skipped.append(job.id)
                continue
            try:
                await self._transition(job, JobStatus.REQUEST, error_msg=None, result_msg=None, completed_at=None)
            except InvalidStateTransitionError as e:
                skipped.append(job.id)
                errors.append(str(e))
                continue
            await self.job_logger.append_log(job.id, "Retry requested")
            affected.append(job.id)
        if skipped:
            errors.insert(0, f"{len(skipped)} job(s) not in failed state were excluded from retry")
        return BulkActionResponse(
            message=f"{len(affected)} job(s) will be retried", affected_ids=affected, skipped_ids=skipped, errors=errors
        )

    async def delete_jobs(self, selection: BulkActionRequest) -> BulkActionResponse:
        jobs = await self.store.bulk_select(selection)
        affected, skipped = [], []
        for job in jobs:
            if is_transient(job.status):
                skipped.append(job.id)
                continue
            if await self.store.delete_job(job.id):
                affected.append(job.id)
        errors = [f"{len(skipped)} running job(s) were not deleted"] if skipped else []
        return BulkActionResponse(
            message=f"{len(affected)} job(s) deleted", affected_ids=affected, skipped_ids=skipped, errors=errors
        )

    async def bulk_pending_to_request(self, selection: BulkActionRequest) -> BulkActionResponse:
        jobs = await self.store.bulk_select(selection)
        affected, skipped = [], []
        for job in jobs:
            if job.status != JobStatus.PENDING.value:
                skipped.append(job.id)
                continue
            if await self.store.transition_status(job.id, JobStatus.REQUEST, expected=JobStatus.PENDING):
                affected.append(job.id)
            else:
                skipped.append(job.id)
        return BulkActionResponse(
            message=f"{len(affected)} job(s) moved to request", affected_ids=affected, skipped_ids=skipped
        )

    async def bulk_retry_delete(self, selection: BulkActionRequest) -> BulkActionResponse:
        jobs = await self.store.bulk_select(selection)
        affected, skipped = [], []
        for job in jobs:
            if job.type != JobType.POST.value or job.status != JobStatus.DELETE_FAILED.value:
                skipped.append(job.id)
                continue
            payload = await self.store.get_payload(job.id, JobType.POST)
            if payload is None or not payload.result_url or payload.deleted_at is not None:
                skipped.append(job.id)
                continue
            try:
                await self._request_deletion(job)
            except InvalidStateTransitionError:
                skipped.append(job.id)
                continue
            affected.append(job.id)
        return BulkActionResponse(
            message=f"{len(affected)} deletion(s) will be retried", affected_ids=affected, skipped_ids=skipped
        )

    async def bulk_apply_interval(self, request: IntervalRequest) -> BulkActionResponse:
        """Spread selected PENDING jobs out from now with random gaps in [start, end] seconds."""
        jobs = [job for job in await self.store.bulk_select(request) if job.status == JobStatus.PENDING.value]
        if len(jobs) < 2:
            raise ValidationError("Select at least two pending jobs to apply an interval", field="include_ids")

        scheduled_at = self._clock()
        affected = []
        for index, job in enumerate(jobs):
            if index > 0:
                scheduled_at += self._rng.randint(request.interval_start, request.interval_end)
            await self.store.update_job(job.id, scheduled_at=scheduled_at)
            affected.append(job.id)
        return BulkActionResponse(message=f"Interval applied to {len(affected)} job(s)", affected_ids=affected)

    async def bulk_update_auto_delete(self, request: AutoDeleteRequest) -> BulkActionResponse:
        """Set or clear auto-delete minutes on POST jobs that are not deleted yet."""
        jobs = await self.store.bulk_select(request)
        minutes = request.auto_delete_minutes
        now = self._clock()
        affected, skipped = [], []
        for job in jobs:
            payload = await self.store.get_payload(job.id, JobType.POST) if job.type == JobType.POST.value else None
            if payload is None or payload.deleted_at is not None:
                skipped.append(job.id)
                continue
            fields: dict = {"auto_delete_minutes": minutes}
            if minutes is None:
                fields["delete_at"] = None
            elif job.status == JobStatus.COMPLETED.value:
                fields["delete_at"] = now + minutes * 60
            await self.store.update_payload(job.id, JobType.POST, **fields)
            affected.append(job.id)
        message = (
            f"Auto delete removed from {len(affected)} job(s)"
            if minutes is None
            else f"Auto delete set to {minutes} minutes on {len(affected)} job(s)"
        )
        return BulkActionResponse(message=message, affected_ids=affected, skipped_ids=skipped)

    # Queries

    async def get_job_logs(self, job_id: int) -> List[JobLog]:
        await self.store.get_job(job_id)
        return await self.store.get_logs(job_id)

    async def get_latest_job_log(self, job_id: int) -> Optional[JobLog]:
        await self.store.get_job(job_id)
        return await self.store.get_latest_log(job_id)

    async def list_jobs(
        self,
        filters: Optional[JobFilters] = None,
        page: int = 1,
        limit: int = 20,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> Tuple[List[Job], dict, Pagination]:
        """Jobs of one page, their latest log lines keyed by job id, and pagination info."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", field="page")
        jobs, total = await self.store.list_jobs(filters, page, limit, order_by, order)
        latest = await self.store.get_latest_logs([job.id for job in jobs])
        total_pages = math.ceil(total / limit) if total else 0
        pagination = Pagination(
            page=page,
            limit=limit,
            total_count=total,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )
        return jobs, latest, pagination

