"""Market metadata client (Polymarket Gamma API)."""

import logging
import time
from typing import Any, Callable, List, Optional, Sequence, Tuple

import httpx

from ..config import Settings
from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import GammaMarket, MarketContext
from ..net.cache import TTLCache
from ..net.http import ResilientClient, Sleep
from .parsing import extract_array, first_number, first_text, parse_list, to_number

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """Upstream record is missing or has inconsistent required fields."""


def _provider_error(code: str, message: str, **details: Any) -> AppError:
    # Mapping failures repeat on retry, so they are never retryable
    return AppError(code=code, message=message, category=ErrorCategory.PROVIDER,
                    retryable=False, details=details)


def _string_list(value: Any) -> Optional[List[str]]:
    items = parse_list(value)
    if items is None:
        return None
    strings = [item.strip() for item in items if isinstance(item, str) and item.strip()]
    return strings or None


def _number_list(value: Any) -> Optional[List[float]]:
    items = parse_list(value)
    if items is None:
        return None
    numbers = [n for n in (to_number(item) for item in items) if n is not None]
    return numbers or None


def map_event(raw: Any) -> dict:
    """Map a raw Gamma event record onto the fields a MarketContext needs."""
    if not isinstance(raw, dict):
        raise PayloadError("Invalid event payload")
    event_id = first_text(raw, ("id", "event_id"))
    slug = first_text(raw, ("slug",))
    title = first_text(raw, ("title",))
    if not event_id or not slug or not title:
        raise PayloadError("Missing required event fields")
    return {
        "event_id": event_id,
        "slug": slug,
        "title": title,
        "description": first_text(raw, ("description", "summary", "market_description")),
        "resolution_rules_raw": first_text(raw, ("resolution_rules", "resolutionRules", "resolution_rules_raw")),
        "resolution_source_raw": first_text(raw, ("resolutionSource", "resolution_source", "resolution_source_raw")),
        "end_time": first_text(raw, ("end_time", "endDate", "end_date")),
        "liquidity": first_number(raw, ("liquidity", "liquidityNum")),
    }


def map_market(raw: Any) -> GammaMarket:
    """Map a raw Gamma market record, requiring aligned outcome/price/token lists."""
    if not isinstance(raw, dict):
        raise PayloadError("Invalid market payload")
    market_id = first_text(raw, ("id", "market_id"))
    outcomes = _string_list(raw.get("outcomes"))
    prices = _number_list(raw.get("outcomePrices")) or _number_list(raw.get("outcome_prices"))
    tokens = _string_list(raw.get("clobTokenIds")) or _string_list(raw.get("clob_token_ids"))
    if not market_id or not outcomes or not prices or not tokens:
        raise PayloadError("Missing required market fields")
    if len(outcomes) != len(prices):
        raise PayloadError("Mismatched outcomes and outcomePrices")
    if len(tokens) != len(outcomes):
        raise PayloadError("Mismatched outcomes and clobTokenIds")
    return GammaMarket(
        market_id=market_id,
        question=first_text(raw, ("question",)),
        outcomes=outcomes,
        outcome_prices=prices,
        clob_token_ids=tokens,
        volume=first_number(raw, ("volume", "volumeNum")),
        liquidity=first_number(raw, ("liquidity", "liquidityNum")),
    )


def select_primary_market(markets: Sequence[GammaMarket],
                          preferred_market_id: Optional[str] = None) -> GammaMarket:
    """
    Pick the market a report is about.

    An explicit preference must exist among the markets; otherwise the
    highest-volume market wins (missing volume counts as zero, ties keep
    upstream order).
    """
    if not markets:
        raise PayloadError("No markets available")
    if preferred_market_id:
        for market in markets:
            if market.market_id == preferred_market_id:
                return market
        raise PayloadError(f"Preferred market {preferred_market_id} not found")
    return sorted(markets, key=lambda m: -(m.volume or 0.0))[0]


class GammaClient:
    """Event and market metadata with hour-scale caching."""

    def __init__(self, http: ResilientClient, cache: TTLCache,
                 event_ttl: float = 6 * 60 * 60, markets_ttl: float = 10 * 60):
        self.http = http
        self.cache = cache
        self.event_ttl = event_ttl
        self.markets_ttl = markets_ttl

    @classmethod
    def from_settings(cls, settings: Settings, *,
                      http: Optional[httpx.AsyncClient] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None,
                      sleep: Optional[Sleep] = None,
                      clock: Callable[[], float] = time.time) -> "GammaClient":
        kwargs = {"sleep": sleep} if sleep else {}
        executor = ResilientClient(
            provider="gamma",
            base_url=settings.GAMMA_BASE_URL,
            error_code=ErrorCode.PROVIDER_PM_GAMMA_REQUEST_FAILED,
            timeout=settings.MARKET_HTTP_TIMEOUT_SECONDS,
            retries=settings.MARKET_RETRY_MAX_TRIES,
            backoff_base=settings.MARKET_RETRY_BACKOFF_BASE_SECONDS,
            http=http, transport=transport, clock=clock, **kwargs,
        )
        return cls(executor, TTLCache("gamma", clock=clock),
                   event_ttl=settings.CACHE_TTL_EVENT, markets_ttl=settings.CACHE_TTL_MARKETS)

    async def get_event_by_slug(self, slug: str,
                                preferred_market_id: Optional[str] = None) -> MarketContext:
        """Resolve an event slug to its MarketContext, including the primary market."""
        if not slug or not slug.strip():
            raise _provider_error(ErrorCode.PROVIDER_PM_EVENT_INVALID,
                                  "Event slug is required", slug=slug)
        slug = slug.strip()
        event = await self.cache.get_or_set(f"pm:event:{slug}", self.event_ttl,
                                            lambda: self._load_event(slug))
        markets, primary = await self.list_markets_by_event(event["event_id"], preferred_market_id)
        return MarketContext(
            event_id=event["event_id"],
            slug=event["slug"],
            title=event["title"],
            description=event["description"],
            resolution_rules_raw=event["resolution_rules_raw"],
            resolution_source_raw=event["resolution_source_raw"],
            end_time=event["end_time"],
            markets=markets,
            primary_market_id=primary.market_id,
            outcome_prices=list(primary.outcome_prices),
            clob_token_ids=list(primary.clob_token_ids),
            liquidity=event["liquidity"] if event["liquidity"] is not None else primary.liquidity,
        )

    async def _load_event(self, slug: str) -> dict:
        payload = await self.http.fetch_json("/events", params={"slug": slug, "limit": "1"})
        events = extract_array(payload, ("data", "events"))
        if events is None:
            raise _provider_error(ErrorCode.PROVIDER_PM_EVENT_INVALID,
                                  "Events payload invalid", slug=slug)
        if not events:
            raise _provider_error(ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND,
                                  f"Event not found: {slug}", slug=slug)
        if len(events) > 1:
            raise _provider_error(ErrorCode.PROVIDER_PM_EVENT_NOT_UNIQUE,
                                  "Event slug returned multiple events", slug=slug, count=len(events))
        try:
            return map_event(events[0])
        except PayloadError as e:
            raise _provider_error(ErrorCode.PROVIDER_PM_EVENT_INVALID,
                                  "Event payload missing required fields", slug=slug, error=str(e))

    async def list_markets_by_event(self, event_id: str, preferred_market_id: Optional[str] = None
                                    ) -> Tuple[List[GammaMarket], GammaMarket]:
        """Markets of an event and the selected primary market."""
        if not event_id or not event_id.strip():
            raise _provider_error(ErrorCode.PROVIDER_PM_MARKETS_INVALID,
                                  "event_id is required", event_id=event_id)
        markets = await self.cache.get_or_set(f"pm:markets:{event_id}", self.markets_ttl,
                                              lambda: self._load_markets(event_id))
        try:
            primary = select_primary_market(markets, preferred_market_id)
        except PayloadError as e:
            code = (ErrorCode.PROVIDER_PM_PRIMARY_MARKET_NOT_FOUND if preferred_market_id
                    else ErrorCode.PROVIDER_PM_MARKET_INVALID)
            raise _provider_error(code, str(e), event_id=event_id,
                                  preferred_market_id=preferred_market_id)
        return list(markets), primary

    async def _load_markets(self, event_id: str) -> List[GammaMarket]:
        payload = await self.http.fetch_json("/markets", params={"event_id": event_id})
        raw_markets = extract_array(payload, ("data", "markets"))
        if raw_markets is None:
            raise _provider_error(ErrorCode.PROVIDER_PM_MARKETS_INVALID,
                                  "Markets payload invalid", event_id=event_id)
        if not raw_markets:
            raise _provider_error(ErrorCode.PROVIDER_PM_MARKETS_EMPTY,
                                  "Markets response empty", event_id=event_id)
        try:
            markets = [map_market(raw) for raw in raw_markets]
        except PayloadError as e:
            raise _provider_error(ErrorCode.PROVIDER_PM_MARKET_INVALID,
                                  "Market payload missing required fields", event_id=event_id, error=str(e))
        logger.debug(f"Loaded {len(markets)} markets for event {event_id}")
        return markets

    async def aclose(self) -> None:
        await self.http.aclose()
