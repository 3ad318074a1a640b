import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncGenerator, Awaitable, Callable, Dict

from .base import BrowserSession

logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    EXCLUSIVE = "exclusive"  # Fresh session per run, closed afterwards (proxy / IP rotation)
    REUSE = "reuse"  # One long-lived session per id


class BrowserSessionPool:
    """Hands out browser sessions to job runs.

    A reused session is held by one run at a time: acquiring an id waits on
    that id's lock until the previous holder's scope has exited. A run that
    fails closes the session before the lock is released, so the next holder
    opens a fresh one.
    """

    def __init__(self, open_session: Callable[[str], Awaitable[BrowserSession]]) -> None:
        self._open_session = open_session
        self._sessions: Dict[str, BrowserSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def acquire(
        self, session_id: str, mode: SessionMode | str = SessionMode.REUSE
    ) -> AsyncGenerator[BrowserSession, None]:
        mode = SessionMode(mode)
        if mode == SessionMode.EXCLUSIVE:
            session = await self._open_session(session_id)
            logger.debug(f"Opened exclusive browser session {session_id}")
            try:
                yield session
            finally:
                await session.close()
            return

        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            logger.debug(f"Browser session {session_id} is busy, waiting")
        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = await self._open_session(session_id)
                self._sessions[session_id] = session
                logger.info(f"Opened reusable browser session {session_id}")
            try:
                yield session
            except Exception:
                # A run that failed may have left the page in an unknown state.
                await self.release(session_id)
                raise

    async def release(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.release(session_id)
            except Exception as e:
                logger.error(f"Failed to close browser session {session_id}: {e}")

    def __len__(self) -> int:
        return len(self._sessions)
