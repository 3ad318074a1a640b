"""Gallery monitoring: discover new posts and queue comments for them.

Both passes are driven by LoopSupervisor instances owned by the app.
"""

import logging
import random
from typing import List, Optional

from postflow_server.clients.base import SiteClient
from postflow_server.clients.browser import BrowserSessionPool, SessionMode
from postflow_server.engine.supervisor import LoopSupervisor
from postflow_server.errors import PostflowError
from postflow_server.jobs.service import JobService
from postflow_server.schemas.jobs import CreateCommentJobRequest

from .store import MonitoredPostStore

logger = logging.getLogger(__name__)

MONITOR_SESSION_ID = "monitor"


class MonitoringService:
    def __init__(
        self,
        posts: MonitoredPostStore,
        job_service: JobService,
        site: SiteClient,
        sessions: BrowserSessionPool,
        *,
        galleries: Optional[List[str]] = None,
        comments: Optional[List[str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.posts = posts
        self.job_service = job_service
        self.site = site
        self.sessions = sessions
        self.galleries = list(galleries or [])
        self.comments = list(comments or [])
        self._rng = rng or random.Random()

    async def crawl_galleries(self) -> int:
        """List every watched gallery once and record posts not seen before."""
        discovered = 0
        async with self.sessions.acquire(MONITOR_SESSION_ID, SessionMode.REUSE) as session:
            for gallery_url in self.galleries:
                try:
                    summaries = await self.site.list_posts(session, gallery_url)
                except PostflowError as e:
                    logger.error(f"Crawling {gallery_url} failed: {e}")
                    continue
                added = await self.posts.add_new(gallery_url, summaries)
                if added:
                    logger.info(f"{gallery_url}: {len(added)} new post(s)")
                discovered += len(added)
        return discovered

    async def comment_unanswered(self) -> int:
        """Queue one COMMENT job per unanswered post."""
        if not self.comments:
            logger.warning("No monitor comments configured, skipping auto-comment pass")
            return 0

        queued = 0
        for post in await self.posts.find_unanswered():
            request = CreateCommentJobRequest(
                post_urls=[post.post_url],
                comment_text=self._rng.choice(self.comments),
                subject=f"[monitoring] {post.title}",
            )
            response = await self.job_service.create_comment_job(request)
            await self.posts.mark_answered(post.id, response.job_id)
            queued += 1
        if queued:
            logger.info(f"Queued {queued} monitoring comment job(s)")
        return queued

    def supervisors(self, crawl_interval: float, comment_interval: float) -> List[LoopSupervisor]:
        return [
            LoopSupervisor("monitoring-crawler", self.crawl_galleries, crawl_interval),
            LoopSupervisor("auto-commenter", self.comment_unanswered, comment_interval),
        ]
