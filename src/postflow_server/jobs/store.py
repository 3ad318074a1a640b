"""Persistence for jobs, their payload rows and their logs.

All status writes go through `transition_status`, which validates against the
transition table and applies the change as a conditional update on the status
the caller last saw. A False return means another writer got there first.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from postflow_server.database import get_session
from postflow_server.entities import PAYLOAD_TABLES, Job, JobLog, PostJob, current_timestamp
from postflow_server.errors import JobNotFoundError, PersistenceError, ValidationError
from postflow_server.schemas.jobs import BulkActionRequest, JobFilters

from .state import validate_transition
from .types import JobStatus, JobType, LogLevel, SelectionMode

logger = logging.getLogger(__name__)

_JOB_COLUMNS = {"subject", "desc", "priority", "scheduled_at", "result_msg", "result_url", "error_msg"}
_ORDERABLE = {"id", "priority", "scheduled_at", "created_at", "updated_at", "status", "type"}


def _payload_table(job_type: JobType | str) -> Any:
    return PAYLOAD_TABLES[JobType(job_type).value]


def _apply_filters(query: Any, filters: Optional[JobFilters]) -> Any:
    if filters is None:
        return query
    if filters.status:
        query = query.where(col(Job.status) == filters.status.value)
    if filters.type:
        query = query.where(col(Job.type) == filters.type.value)
    if filters.search:
        query = query.where(
            or_(
                col(Job.subject).contains(filters.search),
                col(Job.desc).contains(filters.search),
                col(Job.result_msg).contains(filters.search),
            )
        )
    return query


class JobStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self, read_only: bool = False) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with get_session(self._session_maker, read_only=read_only) as session:
                yield session
        except OperationalError as e:
            raise PersistenceError(f"Job store unavailable: {e}") from e

    async def create_job(
        self,
        job_type: JobType | str,
        payload: Dict[str, Any],
        *,
        scheduled_at: Optional[int] = None,
        priority: int = 0,
        status: JobStatus | str = JobStatus.REQUEST,
        subject: Optional[str] = None,
        desc: Optional[str] = None,
    ) -> Job:
        """Insert a job and its payload row in one transaction."""
        job_type = JobType(job_type)
        status = JobStatus(status)
        if status not in (JobStatus.REQUEST, JobStatus.PENDING):
            raise ValidationError(f"New jobs start in request or pending, not {status.value}", field="status")

        table = _payload_table(job_type)
        fields = {k: v for k, v in payload.items() if k in table.model_fields and k not in ("id", "job_id")}
        now = current_timestamp()

        async with self._session() as session:
            job = Job(
                type=job_type.value,
                status=status.value,
                subject=subject,
                desc=desc,
                priority=priority,
                scheduled_at=scheduled_at if scheduled_at is not None else now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.flush()
            session.add(table(job_id=job.id, **fields))
            await session.commit()
            await session.refresh(job)
            logger.info(f"Created {job_type.value} job {job.id} in {status.value}")
            return job

    async def get_job(self, job_id: int) -> Job:
        async with self._session(read_only=True) as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    async def get_payload(self, job_id: int, job_type: JobType | str) -> Optional[Any]:
        table = _payload_table(job_type)
        async with self._session(read_only=True) as session:
            result = await session.execute(select(table).where(col(table.job_id) == job_id))
            return result.scalars().first()

    async def update_payload(self, job_id: int, job_type: JobType | str, **fields: Any) -> None:
        table = _payload_table(job_type)
        async with self._session() as session:
            await session.execute(
                update(table)
                .where(col(table.job_id) == job_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )

    async def update_job(self, job_id: int, **fields: Any) -> None:
        """Write non-status columns. Status changes must use `transition_status`."""
        unknown = set(fields) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update job columns directly: {sorted(unknown)}")
        async with self._session() as session:
            await session.execute(
                update(Job)
                .where(col(Job.id) == job_id)
                .values(updated_at=current_timestamp(), **fields)
                .execution_options(synchronize_session=False)
            )

    async def find_ready_jobs(
        self,
        job_type: JobType | str,
        status: JobStatus | str = JobStatus.REQUEST,
        now: Optional[int] = None,
        limit: int = 1,
    ) -> List[Job]:
        """Due jobs of a kind, highest priority first, then oldest schedule."""
        now = now if now is not None else current_timestamp()
        query = (
            select(Job)
            .where(col(Job.type) == JobType(job_type).value)
            .where(col(Job.status) == JobStatus(status).value)
            .where(col(Job.scheduled_at) <= now)
            .order_by(col(Job.priority).desc(), col(Job.scheduled_at).asc(), col(Job.id).asc())
            .limit(limit)
        )
        async with self._session(read_only=True) as session:
            return list((await session.execute(query)).scalars().all())

    async def count_by_status(self, status: JobStatus | str, job_type: Optional[JobType | str] = None) -> int:
        query = select(func.count(col(Job.id))).where(col(Job.status) == JobStatus(status).value)
        if job_type is not None:
            query = query.where(col(Job.type) == JobType(job_type).value)
        async with self._session(read_only=True) as session:
            return (await session.execute(query)).scalar_one()

    async def find_by_status(self, statuses: Iterable[JobStatus | str]) -> List[Job]:
        values = [JobStatus(s).value for s in statuses]
        async with self._session(read_only=True) as session:
            result = await session.execute(select(Job).where(col(Job.status).in_(values)).order_by(col(Job.id)))
            return list(result.scalars().all())

    async def transition_status(
        self,
        job_id: int,
        new_status: JobStatus | str,
        expected: Optional[JobStatus | str] = None,
        **fields: Any,
    ) -> bool:
        """Move a job to `new_status` if it is still in `expected`.

        Without `expected` the current status is read first. Returns False when
        the job left `expected` in the meantime (optimistic conflict).
        """
        new_status = JobStatus(new_status)
        unknown = set(fields) - _JOB_COLUMNS - {"started_at", "completed_at"}
        if unknown:
            raise ValueError(f"Unknown job columns: {sorted(unknown)}")

        async with self._session() as session:
            if expected is None:
                job = await session.get(Job, job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                expected = job.status
            expected = JobStatus(expected)
            validate_transition(expected, new_status, job_id)

            result = await session.execute(
                update(Job)
                .where(col(Job.id) == job_id, col(Job.status) == expected.value)
                .values(status=new_status.value, updated_at=current_timestamp(), **fields)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
            if changed:
                logger.debug(f"Job {job_id}: {expected.value} -> {new_status.value}")
            return changed

    async def append_log(self, job_id: int, message: str, level: LogLevel | str = LogLevel.INFO) -> JobLog:
        entry = JobLog(job_id=job_id, level=LogLevel(level).value, message=message)
        async with self._session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def get_logs(self, job_id: int) -> List[JobLog]:
        async with self._session(read_only=True) as session:
            result = await session.execute(
                select(JobLog).where(col(JobLog.job_id) == job_id).order_by(col(JobLog.id).asc())
            )
            return list(result.scalars().all())

    async def get_latest_log(self, job_id: int) -> Optional[JobLog]:
        async with self._session(read_only=True) as session:
            result = await session.execute(
                select(JobLog).where(col(JobLog.job_id) == job_id).order_by(col(JobLog.id).desc()).limit(1)
            )
            return result.scalars().first()

    async def get_latest_logs(self, job_ids: List[int]) -> Dict[int, JobLog]:
        if not job_ids:
            return {}
        latest = (
            select(func.max(col(JobLog.id)))
            .where(col(JobLog.job_id).in_(job_ids))
            .group_by(col(JobLog.job_id))
            .scalar_subquery()
        )
        async with self._session(read_only=True) as session:
            result = await session.execute(select(JobLog).where(col(JobLog.id).in_(latest)))
            return {entry.job_id: entry for entry in result.scalars().all()}

    async def bulk_select(self, selection: BulkActionRequest) -> List[Job]:
        """Resolve a PAGE or ALL selection into jobs."""
        query = select(Job)
        if selection.mode == SelectionMode.PAGE:
            if not selection.include_ids:
                raise ValidationError("No jobs selected", field="include_ids")
            query = query.where(col(Job.id).in_(selection.include_ids))
        else:
            query = _apply_filters(query, selection.filters)
            if selection.exclude_ids:
                query = query.where(col(Job.id).not_in(selection.exclude_ids))

        async with self._session(read_only=True) as session:
            result = await session.execute(query.order_by(col(Job.id).asc()))
            return list(result.scalars().all())

    async def list_jobs(
        self,
        filters: Optional[JobFilters] = None,
        page: int = 1,
        limit: int = 20,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> Tuple[List[Job], int]:
        if order_by not in _ORDERABLE:
            raise ValidationError(f"Cannot order by {order_by}", field="order_by")
        column = col(getattr(Job, order_by))
        ordering = column.asc() if order.lower() == "asc" else column.desc()

        count_query = _apply_filters(select(func.count(col(Job.id))), filters)
        query = _apply_filters(select(Job), filters).order_by(ordering, col(Job.id).desc())
        query = query.offset((page - 1) * limit).limit(limit)

        async with self._session(read_only=True) as session:
            total = (await session.execute(count_query)).scalar_one()
            jobs = list((await session.execute(query)).scalars().all())
            return jobs, total

    async def find_due_deletions(self, now: Optional[int] = None, limit: int = 10) -> List[Job]:
        """POST jobs with a published article whose auto-delete time has passed."""
        now = now if now is not None else current_timestamp()
        query = (
            select(Job)
            .join(PostJob, col(PostJob.job_id) == col(Job.id))
            .where(col(Job.type) == JobType.POST.value)
            .where(col(Job.status).in_([JobStatus.COMPLETED.value, JobStatus.DELETE_REQUEST.value]))
            .where(col(PostJob.delete_at).is_not(None))
            .where(col(PostJob.delete_at) <= now)
            .where(col(PostJob.deleted_at).is_(None))
            .where(col(PostJob.result_url).is_not(None))
            .order_by(col(PostJob.delete_at).asc())
            .limit(limit)
        )
        async with self._session(read_only=True) as session:
            return list((await session.execute(query)).scalars().all())

    async def find_coupas_job_by_post_url(self, post_url: str) -> Optional[Job]:
        table = _payload_table(JobType.COUPAS)
        async with self._session(read_only=True) as session:
            result = await session.execute(
                select(Job).join(table, col(table.job_id) == col(Job.id)).where(col(table.post_url) == post_url)
            )
            return result.scalars().first()

    async def delete_job(self, job_id: int) -> bool:
        """Remove a job with its logs and payload row."""
        async with self._session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return False
            table = _payload_table(job.type)
            await session.execute(delete(JobLog).where(col(JobLog.job_id) == job_id))
            await session.execute(delete(table).where(col(table.job_id) == job_id))
            await session.delete(job)
            await session.commit()
            logger.info(f"Deleted job {job_id}")
            return True
