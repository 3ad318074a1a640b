import logging
from typing import Iterable, List

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from postflow_server.clients.base import PostSummary
from postflow_server.database import get_session
from postflow_server.entities import MonitoredPost

logger = logging.getLogger(__name__)


class MonitoredPostStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def add_new(self, gallery_url: str, posts: Iterable[PostSummary]) -> List[MonitoredPost]:
        """Insert posts not seen before. Returns the inserted rows."""
        posts = list(posts)
        if not posts:
            return []
        async with get_session(self._session_maker) as session:
            result = await session.execute(
                select(MonitoredPost.post_url).where(col(MonitoredPost.post_url).in_([p.url for p in posts]))
            )
            known = set(result.scalars().all())
            added = []
            for post in posts:
                if post.url in known:
                    continue
                known.add(post.url)
                row = MonitoredPost(gallery_url=gallery_url, post_url=post.url, title=post.title)
                session.add(row)
                added.append(row)
            await session.commit()
            return added

    async def find_unanswered(self, limit: int = 50) -> List[MonitoredPost]:
        async with get_session(self._session_maker, read_only=True) as session:
            result = await session.execute(
                select(MonitoredPost)
                .where(col(MonitoredPost.answered).is_(False))
                .order_by(col(MonitoredPost.id).asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_answered(self, post_id: int, comment_job_id: int) -> None:
        async with get_session(self._session_maker) as session:
            await session.execute(
                update(MonitoredPost)
                .where(col(MonitoredPost.id) == post_id)
                .values(answered=True, comment_job_id=comment_job_id)
                .execution_options(synchronize_session=False)
            )
