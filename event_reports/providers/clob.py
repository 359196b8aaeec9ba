"""Order-book client (Polymarket CLOB API)."""

import logging
import time
from typing import Any, Callable, List, Optional, Sequence

import httpx

from ..config import Settings
from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import ClobSnapshot, NotableWall, OrderBookLevel
from ..net.cache import TTLCache
from ..net.http import ResilientClient, Sleep
from .parsing import to_number

logger = logging.getLogger(__name__)

EMPTY_SNAPSHOT = ClobSnapshot()


def parse_level(raw: Any, side: str) -> OrderBookLevel:
    if not isinstance(raw, dict):
        raise ValueError("Invalid order level")
    price = to_number(raw.get("price"))
    size = to_number(raw.get("size"))
    if price is None or price < 0 or size is None or size <= 0:
        raise ValueError("Invalid order level fields")
    return OrderBookLevel(side=side, price=price, size=size)


def sorted_levels(raw_levels: Sequence[Any], side: str, limit: int) -> List[OrderBookLevel]:
    """Best prices first: bids descending, asks ascending, truncated to limit."""
    levels = [parse_level(raw, side) for raw in raw_levels]
    levels.sort(key=lambda level: -level.price if side == "bid" else level.price)
    return levels[:limit]


def notable_walls(levels: Sequence[OrderBookLevel], multiple: float) -> List[NotableWall]:
    """Levels whose size exceeds `multiple` times the mean level size."""
    if not levels:
        return []
    mean_size = sum(level.size for level in levels) / len(levels)
    if mean_size <= 0:
        return []
    return [
        NotableWall(side=level.side, price=level.price, size=level.size,
                    multiple=level.size / mean_size)
        for level in levels
        if level.size > mean_size * multiple
    ]


def build_snapshot(payload: Any, top_levels: int = 10, wall_multiple: float = 5.0) -> ClobSnapshot:
    """
    Build a ClobSnapshot from a raw /book payload.

    Missing bid or ask arrays yield an empty snapshot; spread and midpoint are
    only set when both sides have levels.
    """
    bids_raw = payload.get("bids") if isinstance(payload, dict) else None
    asks_raw = payload.get("asks") if isinstance(payload, dict) else None
    if not isinstance(bids_raw, list) or not isinstance(asks_raw, list):
        return EMPTY_SNAPSHOT

    bids = sorted_levels(bids_raw, "bid", top_levels)
    asks = sorted_levels(asks_raw, "ask", top_levels)
    if not bids and not asks:
        return EMPTY_SNAPSHOT

    spread = midpoint = None
    if bids and asks:
        best_bid, best_ask = bids[0].price, asks[0].price
        spread = best_ask - best_bid
        midpoint = (best_ask + best_bid) / 2

    levels = bids + asks
    return ClobSnapshot(
        spread=spread,
        midpoint=midpoint,
        book_top_levels=levels,
        notable_walls=notable_walls(levels, wall_multiple),
    )


class ClobClient:
    """Order-book snapshots cached for tens of seconds."""

    def __init__(self, http: ResilientClient, cache: TTLCache, ttl: float = 30,
                 top_levels: int = 10, wall_multiple: float = 5.0):
        self.http = http
        self.cache = cache
        self.ttl = ttl
        self.top_levels = top_levels
        self.wall_multiple = wall_multiple

    @classmethod
    def from_settings(cls, settings: Settings, *,
                      http: Optional[httpx.AsyncClient] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None,
                      sleep: Optional[Sleep] = None,
                      clock: Callable[[], float] = time.time) -> "ClobClient":
        kwargs = {"sleep": sleep} if sleep else {}
        executor = ResilientClient(
            provider="clob",
            base_url=settings.CLOB_BASE_URL,
            error_code=ErrorCode.PROVIDER_PM_CLOB_REQUEST_FAILED,
            timeout=settings.MARKET_HTTP_TIMEOUT_SECONDS,
            retries=settings.MARKET_RETRY_MAX_TRIES,
            backoff_base=settings.MARKET_RETRY_BACKOFF_BASE_SECONDS,
            http=http, transport=transport, clock=clock, **kwargs,
        )
        return cls(executor, TTLCache("clob", clock=clock), ttl=settings.CACHE_TTL_ORDERBOOK,
                   top_levels=settings.ORDERBOOK_TOP_LEVELS,
                   wall_multiple=settings.ORDERBOOK_WALL_MULTIPLE)

    async def get_order_book_summary(self, token_id: str) -> ClobSnapshot:
        if not token_id or not token_id.strip():
            raise AppError(code=ErrorCode.PROVIDER_PM_CLOB_RESPONSE_INVALID,
                           message="token_id is required", category=ErrorCategory.PROVIDER,
                           details={"token_id": token_id})
        return await self.cache.get_or_set(f"pm:book:{token_id}", self.ttl,
                                           lambda: self._load(token_id))

    async def _load(self, token_id: str) -> ClobSnapshot:
        payload = await self.http.fetch_json("/book", params={"token_id": token_id})
        try:
            return build_snapshot(payload, self.top_levels, self.wall_multiple)
        except ValueError as e:
            raise AppError(code=ErrorCode.PROVIDER_PM_CLOB_RESPONSE_INVALID,
                           message="Order book payload missing required fields",
                           category=ErrorCategory.PROVIDER, retryable=False,
                           details={"token_id": token_id, "error": str(e)})

    async def aclose(self) -> None:
        await self.http.aclose()
