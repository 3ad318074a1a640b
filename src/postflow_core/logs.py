import logging
from typing import Optional

from postflow_core.config.settings import settings

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "aiosqlite")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for server and worker processes."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=settings.log_format,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
