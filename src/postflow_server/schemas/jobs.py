from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from postflow_server.jobs.types import JobStatus, JobType, LogLevel, SelectionMode


class JobFilters(BaseModel):
    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    search: Optional[str] = None


class BulkActionRequest(BaseModel):
    """Selection of jobs for bulk admin actions.

    PAGE mode restricts to `include_ids`; ALL mode applies `filters` and drops
    `exclude_ids`.
    """

    mode: SelectionMode = SelectionMode.PAGE
    filters: JobFilters = Field(default_factory=JobFilters)
    include_ids: List[int] = Field(default_factory=list)
    exclude_ids: List[int] = Field(default_factory=list)


class IntervalRequest(BulkActionRequest):
    interval_start: int = Field(..., ge=0, description="Minimum gap in seconds")
    interval_end: int = Field(..., ge=0, description="Maximum gap in seconds")

    @model_validator(mode="after")
    def check_range(self) -> "IntervalRequest":
        if self.interval_start > self.interval_end:
            raise ValueError("interval_start must not exceed interval_end")
        return self


class AutoDeleteRequest(BulkActionRequest):
    auto_delete_minutes: Optional[int] = Field(..., ge=1, description="None removes auto delete")


class BulkActionResponse(BaseModel):
    success: bool = True
    message: str
    affected_ids: List[int] = Field(default_factory=list)
    skipped_ids: List[int] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class JobLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    level: LogLevel
    message: str
    created_at: int


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: JobType
    status: JobStatus
    subject: Optional[str] = None
    desc: Optional[str] = None
    priority: int
    scheduled_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    result_msg: Optional[str] = None
    result_url: Optional[str] = None
    error_msg: Optional[str] = None
    created_at: int
    updated_at: int
    latest_log: Optional[JobLogResponse] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class JobListResponse(BaseModel):
    data: List[JobResponse]
    pagination: Pagination


class _ScheduleFields(BaseModel):
    subject: Optional[str] = None
    desc: Optional[str] = None
    scheduled_at: Optional[int] = Field(default=None, description="Epoch seconds; None runs as soon as possible")
    priority: int = 0
    pending: bool = Field(default=False, description="Create in PENDING instead of REQUEST")


class CreatePostJobRequest(_ScheduleFields):
    gallery_url: str
    title: str
    content_html: str
    headtext: Optional[str] = None
    image_paths: List[str] = Field(default_factory=list)
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None
    auto_delete_minutes: Optional[int] = Field(default=None, ge=1)


class CreateCommentJobRequest(_ScheduleFields):
    post_urls: List[str] = Field(..., min_length=1)
    comment_text: str
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None


class CreateCoupasJobRequest(_ScheduleFields):
    post_url: str
    wordpress_url: str
    wordpress_username: str
    wordpress_api_key: str
    nickname: Optional[str] = None
    password: Optional[str] = None
    login_id: Optional[str] = None
    login_password: Optional[str] = None


class CreateJobResponse(BaseModel):
    success: bool = True
    job_id: int
    is_existing: bool = False
    message: Optional[str] = None


def job_payload(request: BaseModel) -> Dict[str, Any]:
    """Kind-specific payload fields of a create request."""
    return request.model_dump(exclude=set(_ScheduleFields.model_fields))
