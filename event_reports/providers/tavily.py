"""Web-search client (Tavily) organised by evidence lane."""

import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import LaneConfig, Settings
from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import LaneSearchResult, SearchResult
from ..monitoring_metrics import RATE_LIMIT_WAITS
from ..net.cache import TTLCache
from ..net.http import ResilientClient, Sleep
from ..net.rate_limit import TokenBucket
from ..text.normalize import host_of
from .parsing import first_text

logger = logging.getLogger(__name__)

LANES = ("A", "B", "C", "D")
_DAYS_RE = re.compile(r"^(\d+)\s*d$")
_ACCEPTED_RANGES = {"day", "week", "month", "year", "d", "w", "m", "y"}


def normalize_time_range(value: str) -> str:
    """Map "Nd" windows onto the coarse ranges the search API accepts."""
    trimmed = (value or "").strip().lower()
    if trimmed in _ACCEPTED_RANGES:
        return trimmed
    match = _DAYS_RE.match(trimmed)
    if match:
        days = int(match.group(1))
        if days <= 1:
            return "day"
        if days <= 7:
            return "week"
        if days <= 31:
            return "month"
        return "year"
    return trimmed


def build_cache_key(event_slug: str, lane: str, query: str, now: float) -> str:
    """Search results are cached per event, UTC calendar day, lane and query."""
    day = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")
    query_hash = hashlib.sha256(query.strip().encode("utf-8")).hexdigest()[:16]
    return f"tavily:{event_slug}:{day}:{lane}:{query_hash}"


def build_search_request(query: str, lane_config: LaneConfig, settings: Settings) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "query": query,
        "search_depth": lane_config.search_depth,
        "max_results": lane_config.max_results,
        "include_raw_content": settings.TAVILY_INCLUDE_RAW_CONTENT,
        "include_answer": settings.TAVILY_INCLUDE_ANSWER,
        "auto_parameters": settings.TAVILY_AUTO_PARAMETERS,
        "time_range": normalize_time_range(lane_config.time_range),
    }
    if lane_config.include_domains:
        request["include_domains"] = list(lane_config.include_domains)
    if lane_config.exclude_domains:
        request["exclude_domains"] = list(lane_config.exclude_domains)
    return request


def map_results(payload: Any) -> List[SearchResult]:
    """
    Map a search payload to uniform SearchResults.

    Records without title or url, or without any resolvable domain, are skipped.

    Raises:
        ValueError: if the payload has no results array at all
    """
    results = None
    if isinstance(payload, dict):
        for key in ("results", "data"):
            if isinstance(payload.get(key), list):
                results = payload[key]
                break
    if results is None:
        raise ValueError("Missing results array")

    mapped = []
    for record in results:
        if not isinstance(record, dict):
            continue
        title = first_text(record, ("title",))
        url = first_text(record, ("url",))
        if not title or not url:
            continue
        domain = first_text(record, ("domain", "source"))
        if not domain:
            host = host_of(url)
            domain = host.lower() if host else None
        if not domain:
            continue
        mapped.append(SearchResult(
            title=title,
            url=url,
            domain=domain,
            published_at=first_text(record, ("published_at", "published_date", "publishedAt")),
            raw_content=first_text(record, ("raw_content", "content")),
        ))
    return mapped


class TavilyClient:
    """
    Lane-aware search with day-scoped caching and token-bucket pacing.

    The limiter is only consulted on a cache miss, so cached lanes never wait.
    """

    def __init__(self, http: ResilientClient, cache: TTLCache, limiter: TokenBucket,
                 settings: Settings, clock: Callable[[], float] = time.time):
        if not settings.TAVILY_API_KEY:
            raise AppError(code=ErrorCode.PROVIDER_TAVILY_CONFIG_MISSING,
                           message="TAVILY_API_KEY is required",
                           category=ErrorCategory.VALIDATION)
        self.http = http
        self.cache = cache
        self.limiter = limiter
        self.settings = settings
        self.ttl = settings.CACHE_TTL_SEARCH
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *,
                      http: Optional[httpx.AsyncClient] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None,
                      sleep: Optional[Sleep] = None,
                      clock: Callable[[], float] = time.time,
                      limiter_clock: Callable[[], float] = time.monotonic) -> "TavilyClient":
        kwargs = {"sleep": sleep} if sleep else {}
        executor = ResilientClient(
            provider="tavily",
            base_url=settings.TAVILY_BASE_URL,
            error_code=ErrorCode.PROVIDER_TAVILY_REQUEST_FAILED,
            timeout=settings.TAVILY_HTTP_TIMEOUT_SECONDS,
            retries=settings.TAVILY_RETRY_MAX_TRIES,
            backoff_base=settings.TAVILY_RETRY_BACKOFF_BASE_SECONDS,
            http=http, transport=transport, clock=clock, **kwargs,
        )
        limiter = TokenBucket(qps=settings.TAVILY_QPS, burst=settings.TAVILY_BURST,
                              clock=limiter_clock, **kwargs)
        return cls(executor, TTLCache("tavily", clock=clock), limiter, settings, clock=clock)

    async def search_lane(self, event_slug: str, lane: str, query: str) -> LaneSearchResult:
        """
        Run one lane query.

        Returns:
            LaneSearchResult with cache_hit, rate_limited and latency_ms set;
            rate_limited is False whenever the result came from cache
        """
        query = (query or "").strip()
        if not event_slug or not query:
            raise AppError(code=ErrorCode.PROVIDER_TAVILY_QUERY_EMPTY,
                           message="Search requires event_slug and query",
                           category=ErrorCategory.VALIDATION,
                           details={"event_slug": event_slug, "lane": lane})
        if lane not in LANES:
            raise AppError(code=ErrorCode.PROVIDER_TAVILY_CONFIG_MISSING,
                           message=f"Unknown search lane {lane!r}",
                           category=ErrorCategory.VALIDATION, details={"lane": lane})

        started = self._clock()
        rate_limited = False

        async def load() -> List[SearchResult]:
            nonlocal rate_limited
            acquired = await self.limiter.acquire()
            rate_limited = acquired.rate_limited
            if rate_limited:
                RATE_LIMIT_WAITS.labels(provider="tavily").inc()
            request = build_search_request(query, self.settings.lane(lane), self.settings)
            payload = await self.http.post_json(
                "/search", request,
                headers={"Authorization": f"Bearer {self.settings.TAVILY_API_KEY}"},
            )
            try:
                return map_results(payload)
            except ValueError as e:
                raise AppError(code=ErrorCode.PROVIDER_TAVILY_RESPONSE_INVALID,
                               message="Search response missing required fields",
                               category=ErrorCategory.PROVIDER,
                               details={"event_slug": event_slug, "lane": lane, "error": str(e)})

        key = build_cache_key(event_slug, lane, query, started)
        cached = await self.cache.lookup(key, self.ttl, load)
        latency_ms = max(0, int(round((self._clock() - started) * 1000)))
        logger.debug(f"Lane {lane} for {event_slug}: {len(cached.value)} results, "
                     f"cache_hit={cached.cache_hit}, {latency_ms}ms")
        return LaneSearchResult(
            lane=lane,
            query=query,
            results=list(cached.value),
            cache_hit=cached.cache_hit,
            rate_limited=rate_limited and not cached.cache_hit,
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
