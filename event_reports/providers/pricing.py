"""Price, midpoint and price-history client (Polymarket CLOB pricing endpoints)."""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from ..config import Settings
from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import PricePoint
from ..net.cache import TTLCache
from ..net.http import ResilientClient, Sleep
from .parsing import extract_array, first_number, to_number

logger = logging.getLogger(__name__)

PRICE_KEYS = ("price", "marketPrice", "market_price", "lastTradePrice", "last_trade_price")
MIDPOINT_KEYS = ("midpoint", "midpointPrice", "midpoint_price", "mid")
HISTORY_KEYS = ("history", "prices", "data", "points", "price_history")
TS_KEYS = ("ts", "timestamp", "time", "t", "created_at", "createdAt")
POINT_PRICE_KEYS = ("price", "value", "close", "p", "market_price")

# Epoch values above this are already milliseconds
MS_THRESHOLD = 1_000_000_000_000
HOUR_MS = 60 * 60 * 1000


def extract_numeric(payload: Any, keys: Iterable[str]) -> Optional[float]:
    """Number from a bare value, a known key, or a known key under data/result."""
    keys = tuple(keys)
    direct = to_number(payload)
    if direct is not None:
        return direct
    if not isinstance(payload, dict):
        return None
    found = first_number(payload, keys)
    if found is not None:
        return found
    nested = payload.get("data")
    if not isinstance(nested, dict):
        nested = payload.get("result")
    if isinstance(nested, dict):
        return first_number(nested, keys)
    return None


def to_epoch_ms(ts: float) -> int:
    return int(round(ts if ts > MS_THRESHOLD else ts * 1000))


def parse_history_entry(entry: Any) -> Optional[PricePoint]:
    """Accept [ts, price] pairs or dicts with any known timestamp/price key."""
    if isinstance(entry, (list, tuple)) and len(entry) >= 2:
        ts, price = to_number(entry[0]), to_number(entry[1])
    elif isinstance(entry, dict):
        ts, price = first_number(entry, TS_KEYS), first_number(entry, POINT_PRICE_KEYS)
    else:
        return None
    if ts is None or price is None:
        return None
    return PricePoint(ts=to_epoch_ms(ts), price=price)


def normalize_history(points: Iterable[PricePoint]) -> List[PricePoint]:
    """Sort by timestamp and drop later duplicates of the same timestamp."""
    seen = set()
    result = []
    for point in sorted(points, key=lambda p: p.ts):
        if point.ts in seen:
            continue
        seen.add(point.ts)
        result.append(point)
    return result


def resample_history(points: List[PricePoint], interval_hours: float) -> List[PricePoint]:
    """Keep the latest point of each fixed-width bucket, in time order."""
    if not points or interval_hours <= 0:
        return list(points)
    interval_ms = interval_hours * HOUR_MS
    buckets: Dict[int, PricePoint] = {}
    for point in points:
        bucket = int(point.ts // interval_ms)
        existing = buckets.get(bucket)
        if existing is None or point.ts >= existing.ts:
            buckets[bucket] = point
    return [buckets[key] for key in sorted(buckets)]


class PricingClient:
    def __init__(self, http: ResilientClient, cache: TTLCache, price_ttl: float = 30,
                 history_ttl: float = 10 * 60):
        self.http = http
        self.cache = cache
        self.price_ttl = price_ttl
        self.history_ttl = history_ttl

    @classmethod
    def from_settings(cls, settings: Settings, *,
                      http: Optional[httpx.AsyncClient] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None,
                      sleep: Optional[Sleep] = None,
                      clock: Callable[[], float] = time.time) -> "PricingClient":
        kwargs = {"sleep": sleep} if sleep else {}
        executor = ResilientClient(
            provider="pricing",
            base_url=settings.CLOB_BASE_URL,
            error_code=ErrorCode.PROVIDER_PM_PRICING_REQUEST_FAILED,
            timeout=settings.MARKET_HTTP_TIMEOUT_SECONDS,
            retries=settings.MARKET_RETRY_MAX_TRIES,
            backoff_base=settings.MARKET_RETRY_BACKOFF_BASE_SECONDS,
            http=http, transport=transport, clock=clock, **kwargs,
        )
        return cls(executor, TTLCache("pricing", clock=clock),
                   price_ttl=settings.CACHE_TTL_PRICE, history_ttl=settings.CACHE_TTL_PRICE_HISTORY)

    @staticmethod
    def _invalid(message: str, **details: Any) -> AppError:
        return AppError(code=ErrorCode.PROVIDER_PM_PRICING_RESPONSE_INVALID, message=message,
                        category=ErrorCategory.PROVIDER, retryable=False, details=details)

    def _require_token(self, token_id: str) -> None:
        if not token_id or not token_id.strip():
            raise self._invalid("token_id is required", token_id=token_id)

    async def get_market_price(self, token_id: str) -> float:
        self._require_token(token_id)

        async def load() -> float:
            payload = await self.http.fetch_json("/prices", params={"token_id": token_id})
            price = extract_numeric(payload, PRICE_KEYS)
            if price is None:
                raise self._invalid("Market price payload missing required fields", token_id=token_id)
            return price

        return await self.cache.get_or_set(f"pm:price:{token_id}", self.price_ttl, load)

    async def get_midpoint_price(self, token_id: str) -> float:
        self._require_token(token_id)

        async def load() -> float:
            payload = await self.http.fetch_json("/midpoint", params={"token_id": token_id})
            midpoint = extract_numeric(payload, MIDPOINT_KEYS)
            if midpoint is None:
                raise self._invalid("Midpoint payload missing required fields", token_id=token_id)
            return midpoint

        return await self.cache.get_or_set(f"pm:midpoint:{token_id}", self.price_ttl, load)

    async def get_price_history(self, token_id: str, window_hours: int = 24,
                                interval_hours: int = 1) -> List[PricePoint]:
        """
        Price history as millisecond-stamped points, one per interval bucket.

        Args:
            token_id: Outcome token
            window_hours: Lookback requested from the API
            interval_hours: Bucket width used for upstream sampling and resampling

        Returns:
            Points sorted by time with unique timestamps
        """
        self._require_token(token_id)

        async def load() -> List[PricePoint]:
            payload = await self.http.fetch_json("/prices-history", params={
                "token_id": token_id,
                "window": f"{window_hours}h",
                "interval": f"{interval_hours}h",
            })
            raw_history = extract_array(payload, HISTORY_KEYS)
            if raw_history is None:
                raise self._invalid("Price history payload missing required fields", token_id=token_id)
            parsed = [p for p in (parse_history_entry(entry) for entry in raw_history) if p is not None]
            if len(parsed) < len(raw_history):
                logger.debug(f"Skipped {len(raw_history) - len(parsed)} unparseable history points for {token_id}")
            return resample_history(normalize_history(parsed), interval_hours)

        key = f"pm:price_history:{token_id}:{window_hours}:{interval_hours}"
        return await self.cache.get_or_set(key, self.history_ttl, load)

    async def aclose(self) -> None:
        await self.http.aclose()
