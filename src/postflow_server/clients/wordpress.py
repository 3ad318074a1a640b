"""WordPress REST API client authenticated with an application password."""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse, urlunparse

import aiofiles
import httpx

from postflow_server.errors import TerminalAutomationError, TransientAutomationError

from .base import PublishedPost, UploadedMedia

logger = logging.getLogger(__name__)


def _readable_link(link: str) -> str:
    """Decode percent-encoded slugs so non-ASCII permalinks stay readable."""
    parsed = urlparse(link)
    return urlunparse(parsed._replace(path=unquote(parsed.path)))


class WordPressClient:
    def __init__(
        self,
        site_url: str,
        username: str,
        application_password: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not site_url or not username or not application_password:
            raise TerminalAutomationError("WordPress account is not configured", code="MISSING_WORDPRESS_ACCOUNT")
        self.site_url = site_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self.site_url}/wp-json/wp/v2",
            auth=httpx.BasicAuth(username, application_password),
            timeout=timeout,
            transport=transport,
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientAutomationError(f"WordPress unreachable: {e}", code="NETWORK_ERROR") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAutomationError(
                f"WordPress returned {response.status_code}", code=f"HTTP_{response.status_code}"
            )
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise TerminalAutomationError(
                f"WordPress rejected {method} {path}: {message}", code=f"HTTP_{response.status_code}"
            )
        return response.json()

    async def upload_media(self, path: str) -> UploadedMedia:
        file_path = Path(path)
        content_type = mimetypes.guess_type(file_path.name)[0] or "image/jpeg"
        async with aiofiles.open(file_path, "rb") as f:
            content = await f.read()

        media = await self._send(
            "POST",
            "/media",
            content=content,
            headers={
                "Content-Disposition": f'attachment; filename="{file_path.name}"',
                "Content-Type": content_type,
            },
        )
        logger.info(f"Uploaded {file_path.name} to {self.site_url} as media {media['id']}")
        return UploadedMedia(id=media["id"], url=media["source_url"])

    async def create_post(self, title: str, content_html: str, status: str = "publish") -> PublishedPost:
        post = await self._send("POST", "/posts", json={"title": title, "content": content_html, "status": status})
        logger.info(f"Published WordPress post {post['id']} on {self.site_url}")
        return PublishedPost(id=post["id"], url=_readable_link(post["link"]))

    async def aclose(self) -> None:
        await self._client.aclose()
