"""Per-run working folders for downloaded and generated files."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from postflow_core.config import settings

logger = logging.getLogger(__name__)


def job_work_dir(job_id: int, base_dir: Optional[str] = None) -> Path:
    return Path(base_dir or settings.work_dir) / str(job_id)


async def ensure_dir(path: Path) -> Path:
    await aiofiles.os.makedirs(path, exist_ok=True)
    return path


async def save_file(path: Path, content: bytes) -> Path:
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    async with aiofiles.open(path, "wb") as f:
        await f.write(content)
    return path


async def remove_dir(path: Path) -> bool:
    if not await aiofiles.os.path.exists(path):
        return False
    await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
    logger.info(f"Removed working folder {path}")
    return True
