import logging
from typing import Optional

from postflow_server.entities import JobLog

from .context import current_job_id, in_job_context
from .store import JobStore
from .types import LogLevel

logger = logging.getLogger(__name__)

_STDLIB_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class JobLogger:
    """Writes job log lines to the store and mirrors them to the process log."""

    def __init__(self, store: JobStore) -> None:
        self.store = store

    async def log(self, message: str, level: LogLevel | str = LogLevel.INFO) -> JobLog:
        """Append to the job of the active context."""
        return await self.append_log(current_job_id(), message, level)

    async def log_if_active(self, message: str, level: LogLevel | str = LogLevel.INFO) -> Optional[JobLog]:
        if not in_job_context():
            return None
        return await self.log(message, level)

    async def append_log(self, job_id: int, message: str, level: LogLevel | str = LogLevel.INFO) -> JobLog:
        level = LogLevel(level)
        logger.log(_STDLIB_LEVELS[level], f"[job {job_id}] {message}")
        return await self.store.append_log(job_id, message, level)
