"""Boundaries of the external collaborators the job processors drive.

Browser automation for the target site, captcha solving and IP rotation are
provided by a site plugin implementing `SiteClient`; the partner API, the LLM
and the blog platform have concrete httpx/openai clients in this package.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Type, TypeVar, runtime_checkable

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)


@dataclass
class CrawledPost:
    url: str
    title: str
    content: str
    gallery_id: Optional[str] = None
    gallery_name: Optional[str] = None
    image_paths: List[str] = field(default_factory=list)


@dataclass
class PostSummary:
    url: str
    title: str


@dataclass
class Article:
    gallery_url: str
    title: str
    content_html: str
    headtext: Optional[str] = None
    image_paths: List[str] = field(default_factory=list)
    nickname: Optional[str] = None
    password: Optional[str] = None


@dataclass
class CommentDraft:
    text: str
    nickname: Optional[str] = None
    password: Optional[str] = None


@dataclass
class Product:
    product_id: str
    name: str
    price: int
    product_url: str
    image_url: Optional[str] = None
    is_rocket: bool = False


@dataclass
class AffiliateLink:
    original_url: str
    short_url: str
    landing_url: Optional[str] = None


@dataclass
class UploadedMedia:
    id: int
    url: str


@dataclass
class PublishedPost:
    id: int
    url: str


@runtime_checkable
class BrowserSession(Protocol):
    session_id: str

    async def close(self) -> None: ...


class CaptchaSolver(Protocol):
    async def solve(self, image: bytes) -> str: ...


class SiteClient(Protocol):
    """Automation of the target community site."""

    async def open_session(self, session_id: str) -> BrowserSession: ...

    async def login(self, session: BrowserSession, login_id: str, password: str) -> None: ...

    async def crawl_post(self, session: BrowserSession, post_url: str, work_dir: str) -> CrawledPost: ...

    async def list_posts(self, session: BrowserSession, gallery_url: str) -> List[PostSummary]: ...

    async def publish_article(self, session: BrowserSession, article: Article) -> str: ...

    async def write_comment(self, session: BrowserSession, post_url: str, comment: CommentDraft) -> None: ...

    async def delete_article(self, session: BrowserSession, post_url: str, password: Optional[str]) -> None: ...


class PartnerApiClient(Protocol):
    async def search_products(self, keyword: str, limit: int) -> List[Product]: ...

    async def create_deeplinks(self, urls: List[str]) -> List[AffiliateLink]: ...


class ContentGenerator(Protocol):
    async def infer(self, prompt: str, context: str, schema: Type[M]) -> M: ...


class BlogPublisher(Protocol):
    async def upload_media(self, path: str) -> UploadedMedia: ...

    async def create_post(self, title: str, content_html: str, status: str = "publish") -> PublishedPost: ...

    async def aclose(self) -> None: ...


class BlacklistChecker(Protocol):
    async def is_blacklisted(self, gallery_id: str) -> bool: ...


class StaticBlacklist:
    """Blacklist backed by a fixed set of gallery ids."""

    def __init__(self, gallery_ids: Optional[List[str]] = None) -> None:
        self.gallery_ids = set(gallery_ids or [])

    async def is_blacklisted(self, gallery_id: str) -> bool:
        return gallery_id in self.gallery_ids
