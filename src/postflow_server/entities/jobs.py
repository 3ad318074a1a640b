"""Job queue entities."""

import time
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def current_timestamp() -> int:
    return int(time.time())


class Job(SQLModel, table=True):
    """A schedulable, retryable unit of work. Kind-specific data lives in one payload row."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_type_status", "type", "status"),
        Index("idx_jobs_ready", "type", "status", "priority", "scheduled_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str
    status: str
    subject: Optional[str] = None
    desc: Optional[str] = None
    priority: int = Field(default=0)
    scheduled_at: int = Field(default_factory=current_timestamp)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    result_msg: Optional[str] = None
    result_url: Optional[str] = None
    error_msg: Optional[str] = None
    created_at: int = Field(default_factory=current_timestamp)
    updated_at: int = Field(default_factory=current_timestamp)


class JobLog(SQLModel, table=True):
    """Append-only log line of a job. Ordered by id."""

    __tablename__ = "job_logs"
    __table_args__ = (Index("idx_job_logs_job_id", "job_id", "id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="jobs.id")
    level: str = Field(default="info")
    message: str
    created_at: int = Field(default_factory=current_timestamp)


class PostJob(SQLModel, table=True):
    __tablename__ = "post_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="jobs.id", unique=True)
    gallery_url: str
    title: str
    content_html: str
    headtext: Optional[str] = None
    image_paths: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None
    result_url: Optional[str] = None
    auto_delete_minutes: Optional[int] = None
    delete_at: Optional[int] = Field(default=None, index=True)
    deleted_at: Optional[int] = None


class CommentJob(SQLModel, table=True):
    __tablename__ = "comment_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="jobs.id", unique=True)
    post_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    comment_text: str
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None


class CoupasJob(SQLModel, table=True):
    __tablename__ = "coupas_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="jobs.id", unique=True)
    post_url: str = Field(unique=True)
    wordpress_url: str
    wordpress_username: str
    wordpress_api_key: str
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None
    result_blog_link: Optional[str] = None
    result_comment: Optional[str] = None


PAYLOAD_TABLES: Dict[str, Any] = {
    "post": PostJob,
    "comment": CommentJob,
    "coupas": CoupasJob,
}
