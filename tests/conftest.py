from pathlib import Path
from typing import AsyncGenerator, Generator, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postflow_core.config.settings import Settings
from postflow_server.clients.base import Article, CommentDraft, CrawledPost, PostSummary
from postflow_server.database import create_all_tables, create_session_maker
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.store import JobStore


def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'postflow_test.db'}"


class FakeClock:
    """Integer epoch clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeSession:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeSite:
    """In-memory stand-in for the site automation plugin."""

    def __init__(self) -> None:
        self.sessions: List[FakeSession] = []
        self.logins: List[str] = []
        self.published: List[Article] = []
        self.comments: List[tuple] = []
        self.deleted: List[str] = []
        self.fail_comment_on: set = set()
        self.publish_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.posts: dict = {}
        self.listings: dict = {}

    async def open_session(self, session_id: str) -> FakeSession:
        session = FakeSession(session_id)
        self.sessions.append(session)
        return session

    async def login(self, session: FakeSession, login_id: str, password: str) -> None:
        self.logins.append(login_id)

    async def crawl_post(self, session: FakeSession, post_url: str, work_dir: str) -> CrawledPost:
        return self.posts[post_url]

    async def list_posts(self, session: FakeSession, gallery_url: str) -> List[PostSummary]:
        return self.listings.get(gallery_url, [])

    async def publish_article(self, session: FakeSession, article: Article) -> str:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(article)
        return f"https://gall.example.com/board/view?id=test&no={len(self.published)}"

    async def write_comment(self, session: FakeSession, post_url: str, comment: CommentDraft) -> None:
        if post_url in self.fail_comment_on:
            raise RuntimeError(f"comment box missing on {post_url}")
        self.comments.append((post_url, comment.text))

    async def delete_article(self, session: FakeSession, post_url: str, password: Optional[str]) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(post_url)


@pytest_asyncio.fixture
async def session_maker(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine, maker = create_session_maker(database_url(tmp_path))
    await create_all_tables(engine)
    yield maker
    await engine.dispose()


@pytest.fixture
def store(session_maker: async_sessionmaker[AsyncSession]) -> JobStore:
    return JobStore(session_maker)


@pytest.fixture
def job_logger(store: JobStore) -> JobLogger:
    return JobLogger(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def client(tmp_path: Path) -> Generator[TestClient, None, None]:
    from postflow_server.app import create_app

    config = Settings(database_url=database_url(tmp_path), scheduler_enabled=False, site_plugin=None)
    app = create_app(config, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client
