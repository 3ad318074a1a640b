import logging
from contextlib import AsyncExitStack
from typing import List, Optional

from postflow_server.clients.base import CommentDraft
from postflow_server.engine.pipeline import Step, WorkflowState
from postflow_server.entities import CommentJob, Job
from postflow_server.errors import root_message
from postflow_server.jobs.types import JobResult, JobType, LogLevel

from .browser import BrowserJobProcessor

logger = logging.getLogger(__name__)


class CommentJobProcessor(BrowserJobProcessor):
    """Writes the same comment under every post URL of the job.

    Each URL is retried on its own. The job fails only when no comment could
    be written; partial success is reported in the result message.
    """

    job_type = JobType.COMMENT

    async def run(self, job: Job, payload: CommentJob) -> Optional[JobResult]:
        draft = CommentDraft(text=payload.comment_text, nickname=payload.nickname, password=payload.password)
        post_urls: List[str] = list(payload.post_urls or [])

        async def write_comments(state: WorkflowState) -> dict:
            session = state["session"]
            written: List[str] = []
            last_error: Optional[Exception] = None
            for url in post_urls:
                try:
                    await self.retry_policy.call(
                        lambda url=url: self.site.write_comment(session, url, draft), sleep=self._sleep
                    )
                except Exception as e:
                    last_error = e
                    await self.job_logger.log(f"Comment failed on {url}: {root_message(e)}", LogLevel.ERROR)
                    continue
                written.append(url)
                await self.job_logger.log(f"Commented on {url}")

            if not written and last_error is not None:
                raise last_error
            return {"written": written}

        async with AsyncExitStack() as stack:
            pipeline = self.pipeline(
                "comment",
                [
                    self.acquire_session_step(job, stack),
                    self.login_step(payload.login_id, payload.login_password),
                    Step("write_comments", write_comments),
                ],
            )
            state = await pipeline.run({})

        written = state["written"]
        message = f"Commented on {len(written)}/{len(post_urls)} posts"
        return JobResult(result_url=written[0] if len(written) == 1 else None, result_msg=message)
