from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from postflow_server.entities import Job


class JobType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    COUPAS = "coupas"


class JobStatus(str, Enum):
    PENDING = "pending"  # Imported, waiting for manual promotion
    REQUEST = "request"  # Ready to be claimed once scheduled_at has passed
    PROCESSING = "processing"  # Claimed by the scheduler (transient)
    COMPLETED = "completed"
    FAILED = "failed"
    DELETE_REQUEST = "delete_request"
    DELETE_PROCESSING = "delete_processing"  # Deletion running (transient)
    DELETE_COMPLETED = "delete_completed"
    DELETE_FAILED = "delete_failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SelectionMode(str, Enum):
    PAGE = "page"
    ALL = "all"


@dataclass
class JobResult:
    result_url: Optional[str] = None
    result_msg: Optional[str] = None


class JobProcessor(Protocol):
    """Adapter between the scheduler and one job type's pipeline."""

    job_type: JobType

    def can_process(self, job: Job) -> bool: ...

    async def process(self, job_id: int) -> Optional[JobResult]: ...
