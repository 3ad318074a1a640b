"""Coupang Partners open API client (product search and deeplinks)."""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

import httpx

from postflow_server.errors import TerminalAutomationError, TransientAutomationError

from .base import AffiliateLink, Product

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api-gateway.coupang.com"
API_PREFIX = "/v2/providers/affiliate_open_api/apis/openapi/v1"
DEEPLINK_PATH = f"{API_PREFIX}/deeplink"
SEARCH_PATH = f"{API_PREFIX}/products/search"

_API_MESSAGES = {
    "url convert failed": "This product cannot be converted to a partner link",
}


def generate_authorization(
    method: str,
    path: str,
    query: str,
    access_key: str,
    secret_key: str,
    signed_at: Optional[datetime] = None,
) -> str:
    """Build the `CEA` Authorization header value for one request."""
    signed_at = signed_at or datetime.now(timezone.utc)
    signed_date = signed_at.astimezone(timezone.utc).strftime("%y%m%dT%H%M%SZ")
    message = f"{signed_date}{method.upper()}{path}{query}"
    signature = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"CEA algorithm=HmacSHA256, access-key={access_key}, signed-date={signed_date}, signature={signature}"


def _map_api_message(message: Optional[str]) -> str:
    normalized = (message or "").strip().lower()
    return _API_MESSAGES.get(normalized, message or "Coupang Partners API error")


class CoupangPartnersClient:
    def __init__(
        self,
        access_key: str,
        secret_key: str,
        *,
        sub_id: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not access_key or not secret_key:
            raise TerminalAutomationError("Coupang Partners API keys are not configured", code="MISSING_API_KEYS")
        self.access_key = access_key
        self.secret_key = secret_key
        self.sub_id = sub_id
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def _request(
        self, method: str, path: str, params: Dict[str, Any], json: Optional[Dict[str, Any]] = None
    ) -> Any:
        query = urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{path}?{query}" if query else path
        headers = {
            "Authorization": generate_authorization(method, path, query, self.access_key, self.secret_key),
            "Content-Type": "application/json",
        }
        logger.debug(f"Coupang API request: {method} {path}")
        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.TransportError as e:
            raise TransientAutomationError(f"Coupang API unreachable: {e}", code="NETWORK_ERROR") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAutomationError(
                f"Coupang API returned {response.status_code}", code=f"HTTP_{response.status_code}"
            )
        if response.status_code >= 400:
            raise TerminalAutomationError(
                f"Coupang API rejected the request ({response.status_code}): {response.text}",
                code=f"HTTP_{response.status_code}",
            )

        body = response.json()
        if str(body.get("rCode")) != "0":
            raise TerminalAutomationError(_map_api_message(body.get("rMessage")), code="API_ERROR", details=body)
        return body.get("data")

    async def search_products(self, keyword: str, limit: int) -> List[Product]:
        data = await self._request("GET", SEARCH_PATH, {"keyword": keyword, "limit": limit, "subId": self.sub_id})
        items = (data or {}).get("productData") or []
        return [
            Product(
                product_id=str(item.get("productId")),
                name=item.get("productName", ""),
                price=int(item.get("productPrice") or 0),
                product_url=item.get("productUrl", ""),
                image_url=item.get("productImage"),
                is_rocket=bool(item.get("isRocket")),
            )
            for item in items
        ]

    async def create_deeplinks(self, urls: List[str]) -> List[AffiliateLink]:
        for url in urls:
            host = urlparse(url).hostname or ""
            if not host.endswith("coupang.com"):
                raise TerminalAutomationError(f"Not a Coupang product URL: {url}", code="INVALID_URL")

        sub_id = self.sub_id
        body: Dict[str, Any] = {"coupangUrls": urls}
        if sub_id:
            body["subId"] = sub_id
        data = await self._request("POST", DEEPLINK_PATH, {"subId": sub_id}, json=body)
        if not data:
            raise TerminalAutomationError("Coupang API returned no deeplinks", code="API_ERROR")
        return [
            AffiliateLink(
                original_url=item.get("originalUrl", original),
                short_url=item["shortenUrl"],
                landing_url=item.get("landingUrl"),
            )
            for original, item in zip(urls, data)
        ]

    async def aclose(self) -> None:
        await self._client.aclose()
