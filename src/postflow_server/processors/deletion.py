from contextlib import AsyncExitStack
from typing import Optional

from postflow_server.engine.pipeline import Step, WorkflowState
from postflow_server.entities import Job, PostJob
from postflow_server.errors import TerminalAutomationError
from postflow_server.jobs.types import JobResult, JobType

from .browser import BrowserJobProcessor


class PostDeletionProcessor(BrowserJobProcessor):
    """Removes the article a POST job published. Driven by the deletion tick."""

    job_type = JobType.POST
    session_key = "deletion"

    async def run(self, job: Job, payload: PostJob) -> Optional[JobResult]:
        if not payload.result_url:
            raise TerminalAutomationError(f"Job {job.id} has no published article to delete", code="NOTHING_TO_DELETE")

        async def delete_article(state: WorkflowState) -> None:
            await self.site.delete_article(state["session"], payload.result_url, payload.password)
            await self.job_logger.log(f"Deleted article {payload.result_url}")
            return None

        async with AsyncExitStack() as stack:
            pipeline = self.pipeline(
                "delete_post",
                [
                    self.acquire_session_step(job, stack),
                    self.login_step(payload.login_id, payload.login_password),
                    Step("delete_article", delete_article, self.retry_policy),
                ],
            )
            await pipeline.run({})

        return JobResult(result_url=payload.result_url, result_msg="Article deleted")
