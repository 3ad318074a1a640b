import logging
from contextlib import AsyncExitStack
from typing import Optional

from postflow_server.clients.base import Article
from postflow_server.engine.pipeline import Step, WorkflowState
from postflow_server.entities import Job, PostJob, current_timestamp
from postflow_server.jobs.types import JobResult, JobType

from .browser import BrowserJobProcessor

logger = logging.getLogger(__name__)


def compute_delete_at(published_at: int, auto_delete_minutes: Optional[int]) -> Optional[int]:
    if not auto_delete_minutes:
        return None
    return published_at + auto_delete_minutes * 60


class PostJobProcessor(BrowserJobProcessor):
    """Publishes an article on the target site."""

    job_type = JobType.POST

    async def run(self, job: Job, payload: PostJob) -> Optional[JobResult]:
        article = Article(
            gallery_url=payload.gallery_url,
            title=payload.title,
            content_html=payload.content_html,
            headtext=payload.headtext,
            image_paths=list(payload.image_paths or []),
            nickname=payload.nickname,
            password=payload.password,
        )

        async def publish_article(state: WorkflowState) -> dict:
            url = await self.site.publish_article(state["session"], article)
            await self.job_logger.log(f"Published: {url}")
            return {"result_url": url}

        async def record_result(state: WorkflowState) -> None:
            delete_at = compute_delete_at(current_timestamp(), payload.auto_delete_minutes)
            await self.store.update_payload(
                job.id, self.job_type, result_url=state["result_url"], delete_at=delete_at, deleted_at=None
            )
            if delete_at is not None:
                await self.job_logger.log(f"Scheduled for deletion in {payload.auto_delete_minutes} minutes")
            return None

        async with AsyncExitStack() as stack:
            pipeline = self.pipeline(
                "post",
                [
                    self.acquire_session_step(job, stack),
                    self.login_step(payload.login_id, payload.login_password),
                    Step("publish_article", publish_article, self.retry_policy),
                    Step("record_result", record_result),
                ],
            )
            state = await pipeline.run({})

        return JobResult(result_url=state["result_url"], result_msg=f"Posted '{payload.title}'")
