"""Resolver page client: pulls title, date and a text snippet from the official source."""

import logging
import re
import time
from typing import Callable, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from ..config import Settings
from ..exceptions import AppError, ErrorCode
from ..models import OfficialSource
from ..net.http import ResilientClient, Sleep
from ..text.normalize import normalize_domain, truncate_text

logger = logging.getLogger(__name__)

MAX_SNIPPET_CHARS = 280
_URL_RE = re.compile(r"https?://[^\s)]+")
_DATE_META_KEYS = ("article:published_time", "pubdate", "date")


def extract_urls(text: Optional[str]) -> List[str]:
    """Absolute http(s) URLs in free text, trailing punctuation stripped."""
    urls = []
    for match in _URL_RE.findall(text or ""):
        url = match.rstrip("),.;")
        if url:
            urls.append(url)
    return urls


def extract_resolver_url(source_raw: Optional[str], rules_raw: Optional[str]) -> Optional[str]:
    """First URL named by the resolution source, falling back to the resolution rules."""
    for text in (source_raw, rules_raw):
        urls = extract_urls(text)
        if urls:
            return urls[0]
    return None


def _published_at(soup: BeautifulSoup) -> Optional[str]:
    for meta in soup.find_all("meta"):
        key = meta.get("property") or meta.get("name")
        if key and key.lower() in _DATE_META_KEYS and meta.get("content"):
            return meta["content"].strip()
    return None


def parse_official_page(url: str, html: str) -> OfficialSource:
    soup = BeautifulSoup(html, "html.parser")
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    published_at = _published_at(soup)
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = " ".join(soup.get_text(" ", strip=True).split())
    return OfficialSource(
        url=url,
        domain=normalize_domain(url),
        title=title or url,
        published_at=published_at,
        snippet=truncate_text(text, MAX_SNIPPET_CHARS),
    )


class OfficialSourceClient:
    """Fetches the page a market resolves against. Failures are reported, never raised."""

    def __init__(self, http: ResilientClient):
        self.http = http

    @classmethod
    def from_settings(cls, settings: Settings, *,
                      http: Optional[httpx.AsyncClient] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None,
                      sleep: Optional[Sleep] = None,
                      clock: Callable[[], float] = time.time) -> "OfficialSourceClient":
        kwargs = {"sleep": sleep} if sleep else {}
        executor = ResilientClient(
            provider="official",
            base_url="",
            error_code=ErrorCode.PROVIDER_OFFICIAL_REQUEST_FAILED,
            timeout=settings.OFFICIAL_HTTP_TIMEOUT_SECONDS,
            retries=settings.OFFICIAL_RETRY_MAX_TRIES,
            backoff_base=settings.MARKET_RETRY_BACKOFF_BASE_SECONDS,
            http=http, transport=transport, clock=clock, **kwargs,
        )
        return cls(executor)

    async def fetch_official_source(
            self, resolver_url: Optional[str]) -> Tuple[List[OfficialSource], Optional[str]]:
        """
        Fetch and parse the resolver page.

        Returns:
            (sources, error) where error is one of "resolver_url_missing",
            "request_failed:<status or reason>", "empty_body" or None
        """
        url = (resolver_url or "").strip()
        if not url:
            return [], "resolver_url_missing"
        try:
            html = await self.http.fetch_text(url)
        except AppError as e:
            status = e.details.get("status")
            reason = str(status) if status is not None else e.message
            logger.warning(f"Official source fetch failed for {url}: {e.message}")
            return [], f"request_failed:{reason}"
        if not html or not html.strip():
            return [], "empty_body"
        source = parse_official_page(url, html)
        logger.info(f"Fetched official source {source.domain} ({len(source.snippet)} chars)")
        return [source], None

    async def aclose(self) -> None:
        await self.http.aclose()
