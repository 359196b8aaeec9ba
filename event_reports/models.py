from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal

SourceType = Literal["official", "media", "market", "social", "onchain"]
Stance = Literal["supports_yes", "supports_no", "neutral"]
Lane = Literal["A", "B", "C", "D"]


class Snapshot(BaseModel):
    """Immutable value object returned by provider clients."""
    model_config = ConfigDict(frozen=True)


# ==== Order book ====

class OrderBookLevel(Snapshot):
    side: Literal["bid", "ask"]
    price: float
    size: float


class NotableWall(Snapshot):
    side: Literal["bid", "ask"]
    price: float
    size: float
    multiple: float


class ClobSnapshot(Snapshot):
    spread: Optional[float] = None
    midpoint: Optional[float] = None
    book_top_levels: List[OrderBookLevel] = Field(default_factory=list)
    notable_walls: List[NotableWall] = Field(default_factory=list)

    @property
    def bids(self) -> List[OrderBookLevel]:
        return [level for level in self.book_top_levels if level.side == "bid"]

    @property
    def asks(self) -> List[OrderBookLevel]:
        return [level for level in self.book_top_levels if level.side == "ask"]


# ==== Prices ====

class PricePoint(Snapshot):
    ts: int  # epoch milliseconds
    price: float


class PriceSignals(Snapshot):
    change_1h: Optional[float] = None
    change_4h: Optional[float] = None
    change_24h: Optional[float] = None
    volatility_24h: Optional[float] = None
    range_high_24h: Optional[float] = None
    range_low_24h: Optional[float] = None
    trend_slope_24h: Optional[float] = None
    spike_flag: Optional[bool] = None


class PriceContext(Snapshot):
    token_id: str
    latest_price: Optional[float] = None
    midpoint_price: Optional[float] = None
    history_24h: List[PricePoint] = Field(default_factory=list)
    signals: PriceSignals = Field(default_factory=PriceSignals)
    warnings: List[str] = Field(default_factory=list)


# ==== Market metadata ====

class GammaMarket(Snapshot):
    market_id: str
    question: Optional[str] = None
    outcomes: List[str] = Field(default_factory=list)
    outcome_prices: List[float] = Field(default_factory=list)
    clob_token_ids: List[str] = Field(default_factory=list)
    volume: Optional[float] = None
    liquidity: Optional[float] = None


class MarketContext(Snapshot):
    event_id: str
    slug: str
    title: str
    description: Optional[str] = None
    resolution_rules_raw: Optional[str] = None
    resolution_source_raw: Optional[str] = None
    end_time: Optional[str] = None
    markets: List[GammaMarket] = Field(default_factory=list)
    primary_market_id: Optional[str] = None
    outcome_prices: List[float] = Field(default_factory=list)
    clob_token_ids: List[str] = Field(default_factory=list)
    liquidity: Optional[float] = None


class LiquidityProxy(Snapshot):
    gamma_liquidity: Optional[float] = None
    book_depth_top10: float = 0.0
    spread: Optional[float] = None
    midpoint: Optional[float] = None
    notable_walls: List[NotableWall] = Field(default_factory=list)


# ==== Search ====

class SearchResult(Snapshot):
    title: str
    url: str
    domain: str
    published_at: Optional[str] = None
    raw_content: Optional[str] = None


class LaneQuery(Snapshot):
    lane: Lane
    query: str


class QueryPlan(Snapshot):
    lanes: List[LaneQuery]

    def lane_ids(self) -> List[str]:
        return [item.lane for item in self.lanes]


class LaneSearchResult(Snapshot):
    lane: Lane
    query: str
    results: List[SearchResult] = Field(default_factory=list)
    cache_hit: bool = False
    rate_limited: bool = False
    latency_ms: int = 0


class DroppedEvidence(Snapshot):
    url: str
    reason: Literal["missing_raw_content", "stale_published_at", "invalid_published_at", "no_keyword_match"]
    lane: Lane
    query: str
    title: Optional[str] = None
    published_at: Optional[str] = None


class EvidenceCandidate(Snapshot):
    source_type: SourceType
    url: str
    domain: str
    published_at: Optional[str] = None
    claim: str
    stance: Stance = "neutral"
    novelty: Literal["new", "priced_in", "unknown"] = "unknown"
    repeated: bool = False
    strength: int = 1
    lane: str
    query: str
    similarity_key: str


# ==== Batch ====

class ErrorInfo(Snapshot):
    code: str
    message: str
    category: str
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class BatchItem(Snapshot):
    event_slug: str
    run_id: Optional[str] = None


class BatchItemResult(Snapshot):
    event_id: str
    run_id: str
    status: Literal["success", "failed"]
    error: Optional[ErrorInfo] = None


class BatchSummary(Snapshot):
    total: int
    succeeded: int
    failed: int
    invalid: int


class BatchResult(Snapshot):
    request_id: str
    successes: List[BatchItemResult] = Field(default_factory=list)
    failures: List[BatchItemResult] = Field(default_factory=list)
    summary: BatchSummary


class MarketSignal(Snapshot):
    """Market behaviour observed for one outcome token."""
    market_id: Optional[str] = None
    token_id: Optional[str] = None
    price_context: PriceContext
    clob_snapshot: ClobSnapshot


class OfficialSource(Snapshot):
    """Text pulled from the page an event resolves against."""
    url: str
    domain: str
    title: str
    published_at: Optional[str] = None
    snippet: str
