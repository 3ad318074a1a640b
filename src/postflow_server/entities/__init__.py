from .jobs import PAYLOAD_TABLES, CommentJob, CoupasJob, Job, JobLog, PostJob, current_timestamp
from .monitoring import MonitoredPost

__all__ = [
    "Job",
    "JobLog",
    "PostJob",
    "CommentJob",
    "CoupasJob",
    "MonitoredPost",
    "PAYLOAD_TABLES",
    "current_timestamp",
]
