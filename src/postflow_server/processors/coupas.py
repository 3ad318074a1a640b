"""Affiliate workflow: turn a community post into a product roundup blog post.

Steps: check_blacklist, crawl_post, generate_keywords, search_products,
create_affiliate_links, upload_images, build_content, publish_post,
create_comment_job. Every partner API call waits on the shared token bucket.
The per-run working folder is removed whether the run succeeds or not.
"""

import asyncio
import html
import logging
import re
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from postflow_server import fs
from postflow_server.clients.base import (
    BlacklistChecker,
    BlogPublisher,
    ContentGenerator,
    CrawledPost,
    PartnerApiClient,
    Product,
    SiteClient,
)
from postflow_server.clients.browser import BrowserSessionPool, SessionMode
from postflow_server.clients.wordpress import WordPressClient
from postflow_server.engine.pipeline import Step, WorkflowState
from postflow_server.engine.rate_limiter import TokenBucket
from postflow_server.engine.retry import RetryPolicy, SleepFn
from postflow_server.entities import CoupasJob, Job
from postflow_server.errors import TerminalAutomationError, TransientAutomationError, root_message
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.store import JobStore
from postflow_server.jobs.types import JobResult, JobStatus, JobType, LogLevel

from .browser import BrowserJobProcessor

logger = logging.getLogger(__name__)

PARTNERS_DISCLOSURE = "이 포스팅은 쿠팡 파트너스 활동의 일환으로, 이에 따른 일정액의 수수료를 제공받습니다."

KEYWORD_PROMPT = (
    "You recommend products for a community post. Read the post and return between {keyword_min} and "
    "{keyword_max} short search keywords for products its readers would want to buy on Coupang, plus a "
    "clear, SEO-friendly blog title of at most 30 characters. Write keywords and title in the post's language."
)

_GALLERY_ID = re.compile(r"[?&]id=([^&]+)")


class ProductRecommendation(BaseModel):
    search_keywords: List[str] = Field(..., min_length=1)
    blog_title: str


@dataclass
class LinkedProduct:
    product: Product
    affiliate_url: str
    image_path: Optional[str] = None


@dataclass
class KeywordProducts:
    keyword: str
    products: List[LinkedProduct] = field(default_factory=list)


BlogPublisherFactory = Callable[[CoupasJob], BlogPublisher]


def extract_gallery_id(url: str) -> Optional[str]:
    match = _GALLERY_ID.search(url)
    return match.group(1) if match else None


def short_link(site_url: str, post_id: int) -> str:
    parsed = urlparse(site_url)
    return f"{parsed.scheme}://{parsed.netloc}/?p={post_id}"


def build_content(post_image_urls: List[str], results: List[KeywordProducts], uploaded: Dict[str, str]) -> str:
    """Blog HTML: disclosure notice, then one heading and product list per keyword."""
    parts = [f'<div class="coupang-announce">{html.escape(PARTNERS_DISCLOSURE)}</div>']
    for url in post_image_urls:
        parts.append(f'<p><img src="{html.escape(url)}" alt="" /></p>')

    for result in results:
        if not result.products:
            continue
        parts.append(f"<h2>{html.escape(result.keyword)}</h2>")
        parts.append('<ul class="coupang-products">')
        for linked in result.products:
            product = linked.product
            image = uploaded.get(linked.image_path or "") or product.image_url or ""
            rocket = ' <span class="rocket">로켓배송</span>' if product.is_rocket else ""
            parts.append(
                "<li>"
                f'<a href="{html.escape(linked.affiliate_url)}" target="_blank" rel="nofollow sponsored">'
                f'<img src="{html.escape(image)}" alt="{html.escape(product.name)}" />'
                f"<h4>{html.escape(product.name)}</h4>"
                f"<p>{product.price:,}원{rocket}</p>"
                "</a></li>"
            )
        parts.append("</ul>")
    return "\n".join(parts)


def _default_publisher(payload: CoupasJob) -> BlogPublisher:
    return WordPressClient(payload.wordpress_url, payload.wordpress_username, payload.wordpress_api_key)


class CoupasJobProcessor(BrowserJobProcessor):
    job_type = JobType.COUPAS

    def __init__(
        self,
        store: JobStore,
        job_logger: JobLogger,
        site: SiteClient,
        sessions: BrowserSessionPool,
        partner_api: PartnerApiClient,
        content_generator: ContentGenerator,
        rate_limiter: TokenBucket,
        *,
        blacklist: Optional[BlacklistChecker] = None,
        publisher_factory: BlogPublisherFactory = _default_publisher,
        http_client: Optional[httpx.AsyncClient] = None,
        work_dir: Optional[str] = None,
        keyword_min: int = 2,
        keyword_max: int = 5,
        products_per_keyword: int = 1,
        comment_template: str = "{blog_link}",
        session_mode: SessionMode | str = SessionMode.REUSE,
        task_delay: float = 0.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(
            store,
            job_logger,
            site,
            sessions,
            session_mode=session_mode,
            task_delay=task_delay,
            retry_policy=retry_policy,
            sleep=sleep,
        )
        if keyword_min < 1 or keyword_max < keyword_min:
            raise ValueError("keyword_min must be >= 1 and <= keyword_max")
        self.partner_api = partner_api
        self.content_generator = content_generator
        self.rate_limiter = rate_limiter
        self.blacklist = blacklist
        self.publisher_factory = publisher_factory
        self.http_client = http_client
        self.work_dir = work_dir
        self.keyword_min = keyword_min
        self.keyword_max = keyword_max
        self.products_per_keyword = products_per_keyword
        self.comment_template = comment_template

    async def run(self, job: Job, payload: CoupasJob) -> Optional[JobResult]:
        work_dir = fs.job_work_dir(job.id, self.work_dir)

        async with AsyncExitStack() as stack:
            http_client = self.http_client or await stack.enter_async_context(httpx.AsyncClient(timeout=10.0))
            publisher = self.publisher_factory(payload)
            stack.push_async_callback(publisher.aclose)

            async def check_blacklist(state: WorkflowState) -> None:
                gallery_id = extract_gallery_id(payload.post_url)
                if gallery_id and self.blacklist is not None and await self.blacklist.is_blacklisted(gallery_id):
                    await self.job_logger.log(f"Gallery {gallery_id} is blacklisted", LogLevel.WARN)
                    raise TerminalAutomationError(
                        f"Gallery {gallery_id} is blacklisted, skipping coupas job", code="BLACKLISTED_GALLERY"
                    )
                return None

            async def crawl_post(state: WorkflowState) -> dict:
                await fs.ensure_dir(work_dir)
                post = await self.site.crawl_post(state["session"], payload.post_url, str(work_dir))
                await self.job_logger.log(f"Crawled '{post.title}' ({len(post.image_paths)} images)")
                return {"post": post}

            async def generate_keywords(state: WorkflowState) -> dict:
                return await self._generate_keywords(state["post"])

            async def search_products(state: WorkflowState) -> dict:
                return {"product_map": await self._search_products(state["keywords"])}

            async def create_affiliate_links(state: WorkflowState) -> dict:
                results = await self._create_affiliate_links(state["product_map"], http_client, work_dir)
                return {"results": results}

            async def upload_images(state: WorkflowState) -> dict:
                post: CrawledPost = state["post"]
                paths = list(post.image_paths)
                paths += [p.image_path for r in state["results"] for p in r.products if p.image_path]
                uploaded: Dict[str, str] = {}
                for path in paths:
                    try:
                        media = await publisher.upload_media(path)
                    except Exception as e:
                        logger.warning(f"Image upload failed for {path}: {e}")
                        continue
                    uploaded[path] = media.url
                await self.job_logger.log(f"Uploaded {len(uploaded)}/{len(paths)} images")
                return {"uploaded": uploaded}

            async def build_content_step(state: WorkflowState) -> dict:
                post: CrawledPost = state["post"]
                post_images = [state["uploaded"][p] for p in post.image_paths if p in state["uploaded"]]
                return {"content_html": build_content(post_images, state["results"], state["uploaded"])}

            async def publish_post(state: WorkflowState) -> dict:
                published = await publisher.create_post(state["blog_title"], state["content_html"])
                blog_link = short_link(payload.wordpress_url, published.id)
                comment_text = self.comment_template.format(blog_link=blog_link)
                await self.store.update_payload(
                    job.id, self.job_type, result_blog_link=blog_link, result_comment=comment_text
                )
                await self.job_logger.log(f"Published blog post {published.url}")
                return {"blog_link": blog_link, "comment_text": comment_text}

            async def create_comment_job(state: WorkflowState) -> dict:
                post: CrawledPost = state["post"]
                comment_job = await self.store.create_job(
                    JobType.COMMENT,
                    {
                        "post_urls": [payload.post_url],
                        "comment_text": state["comment_text"],
                        "nickname": payload.nickname,
                        "password": payload.password,
                        "login_id": payload.login_id,
                        "login_password": payload.login_password,
                    },
                    status=JobStatus.REQUEST,
                    subject=f"Coupas comment: {post.title}",
                )
                await self.job_logger.log(f"Created comment job {comment_job.id}")
                return {"comment_job_id": comment_job.id}

            pipeline = self.pipeline(
                "coupas",
                [
                    Step("check_blacklist", check_blacklist),
                    self.acquire_session_step(job, stack),
                    Step("crawl_post", crawl_post, self.retry_policy),
                    Step("generate_keywords", generate_keywords, self.retry_policy),
                    Step("search_products", search_products, self.retry_policy),
                    Step("create_affiliate_links", create_affiliate_links, self.retry_policy),
                    Step("upload_images", upload_images),
                    Step("build_content", build_content_step),
                    Step("publish_post", publish_post),
                    Step("create_comment_job", create_comment_job),
                ],
            )
            state = await pipeline.run({}, cleanup=lambda _state: fs.remove_dir(work_dir))

        return JobResult(result_url=state["blog_link"], result_msg=f"Published {state['blog_link']}")

    async def _generate_keywords(self, post: CrawledPost) -> dict:
        prompt = KEYWORD_PROMPT.format(keyword_min=self.keyword_min, keyword_max=self.keyword_max)
        context = f"Gallery: {post.gallery_name or post.gallery_id or ''}\nTitle: {post.title}\n\n{post.content}"
        recommendation = await self.content_generator.infer(prompt, context, ProductRecommendation)

        keywords: List[str] = []
        for keyword in recommendation.search_keywords:
            keyword = keyword.strip()
            if keyword and keyword not in keywords:
                keywords.append(keyword)
        keywords = keywords[: self.keyword_max]
        if len(keywords) < self.keyword_min:
            raise TransientAutomationError(
                f"Got {len(keywords)} keywords, need at least {self.keyword_min}", code="AI_RECOMMENDATION_FAILED"
            )

        blog_title = recommendation.blog_title.strip() or post.title
        await self.job_logger.log(f"Keywords: {', '.join(keywords)} / title: {blog_title}")
        return {"keywords": keywords, "blog_title": blog_title}

    async def _search_products(self, keywords: List[str]) -> Dict[str, List[Product]]:
        search_count = max(10, self.products_per_keyword * 2)
        product_map: Dict[str, List[Product]] = {}
        for keyword in keywords:
            await self.rate_limiter.acquire_token()
            products = await self.partner_api.search_products(keyword, search_count)
            if not products:
                raise TerminalAutomationError(f"{keyword}: no search results", code="NO_SEARCH_RESULTS")
            await self.job_logger.log(f"{keyword}: {len(products)} products found")
            product_map[keyword] = products
        return product_map

    async def _create_affiliate_links(
        self, product_map: Dict[str, List[Product]], http_client: httpx.AsyncClient, work_dir: Path
    ) -> List[KeywordProducts]:
        results: List[KeywordProducts] = []
        for keyword, products in product_map.items():
            linked = KeywordProducts(keyword)
            for rank, product in enumerate(products, start=1):
                if len(linked.products) >= self.products_per_keyword:
                    break
                try:
                    await self.rate_limiter.acquire_token()
                    links = await self.partner_api.create_deeplinks([product.product_url])
                except Exception as e:
                    await self.job_logger.log(
                        f"{keyword}: link for rank {rank} failed ({root_message(e)}), trying next", LogLevel.WARN
                    )
                    continue
                image_path = await self._download_image(http_client, product, work_dir)
                linked.products.append(LinkedProduct(product, links[0].short_url, image_path))
                await self.job_logger.log(
                    f"{keyword}: rank {rank} linked ({len(linked.products)}/{self.products_per_keyword})"
                )

            if not linked.products:
                raise TransientAutomationError(f"{keyword}: every product failed", code="ALL_PRODUCTS_FAILED")
            results.append(linked)
        return results

    async def _download_image(self, client: httpx.AsyncClient, product: Product, work_dir: Path) -> Optional[str]:
        if not product.image_url:
            return None
        suffix = Path(urlparse(product.image_url).path).suffix or ".jpg"
        try:
            response = await client.get(product.image_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Product image download failed ({product.image_url}): {e}")
            return None
        path = await fs.save_file(work_dir / f"product_{product.product_id}{suffix}", response.content)
        return str(path)
