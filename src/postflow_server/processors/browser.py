import asyncio
from contextlib import AsyncExitStack
from typing import Optional

from postflow_server.clients.base import SiteClient
from postflow_server.clients.browser import BrowserSessionPool, SessionMode
from postflow_server.engine.pipeline import Step, WorkflowState
from postflow_server.engine.retry import RetryPolicy, SleepFn
from postflow_server.entities import Job
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.store import JobStore

from .base import BaseJobProcessor


class BrowserJobProcessor(BaseJobProcessor):
    """Base for processors that drive the target site through a browser session.

    In REUSE mode each processor keeps one long-lived session under its own
    `session_key`, held by one run at a time. In EXCLUSIVE mode each run gets
    its own session, closed when the run ends.
    """

    session_key: Optional[str] = None

    def __init__(
        self,
        store: JobStore,
        job_logger: JobLogger,
        site: SiteClient,
        sessions: BrowserSessionPool,
        *,
        session_mode: SessionMode | str = SessionMode.REUSE,
        task_delay: float = 0.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(store, job_logger, retry_policy=retry_policy, sleep=sleep)
        self.site = site
        self.sessions = sessions
        self.session_mode = SessionMode(session_mode)
        self.task_delay = task_delay

    def session_id(self, job: Job) -> str:
        if self.session_mode == SessionMode.EXCLUSIVE:
            return f"job-{job.id}"
        return f"site:{self.session_key or self.job_type.value}"

    def acquire_session_step(self, job: Job, stack: AsyncExitStack) -> Step:
        async def acquire_session(state: WorkflowState) -> dict:
            if self.task_delay > 0:
                await self.job_logger.log(f"Waiting {self.task_delay:.0f}s before the browser task")
                await self._sleep(self.task_delay)
            session = await stack.enter_async_context(self.sessions.acquire(self.session_id(job), self.session_mode))
            return {"session": session}

        return Step("acquire_session", acquire_session)

    def login_step(self, login_id: Optional[str], login_password: Optional[str]) -> Step:
        async def login(state: WorkflowState) -> None:
            if not login_id or not login_password:
                await self.job_logger.log("No login configured, writing as a guest")
                return None
            await self.site.login(state["session"], login_id, login_password)
            await self.job_logger.log(f"Logged in as {login_id}")
            return None

        return Step("login", login, self.retry_policy)
