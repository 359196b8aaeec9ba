from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field
from typing import Literal, Optional, Dict, List
from functools import lru_cache

from .exceptions import ConfigurationError


class LaneConfig(BaseModel):
    """Search parameters for one evidence lane."""
    name: str
    search_depth: Literal["basic", "advanced"] = "basic"
    max_results: int = Field(5, ge=1, le=20)
    time_range: str = "7d"
    include_domains: List[str] = Field(default_factory=list)
    exclude_domains: List[str] = Field(default_factory=list)


def _default_lanes() -> Dict[str, LaneConfig]:
    return {
        "A": LaneConfig(name="update", search_depth="basic", max_results=5, time_range="7d"),
        "B": LaneConfig(name="primary", search_depth="basic", max_results=5, time_range="30d"),
        "C": LaneConfig(name="counter", search_depth="advanced", max_results=5, time_range="30d"),
        "D": LaneConfig(name="chatter", search_depth="basic", max_results=3, time_range="7d"),
    }


class Settings(BaseSettings):
    # ==== Upstream endpoints ====
    GAMMA_BASE_URL: str = "https://gamma-api.polymarket.com"
    CLOB_BASE_URL: str = "https://clob.polymarket.com"
    TAVILY_BASE_URL: str = "https://api.tavily.com"
    TAVILY_API_KEY: Optional[str] = None
    POLYMARKET_EVENT_URL: str = "https://polymarket.com/event"

    # ==== HTTP & retries ====
    MARKET_HTTP_TIMEOUT_SECONDS: float = Field(15.0, description="Hard timeout per market data request")
    MARKET_RETRY_MAX_TRIES: int = Field(3, description="Retries after the first market data attempt")
    MARKET_RETRY_BACKOFF_BASE_SECONDS: float = 0.3
    TAVILY_HTTP_TIMEOUT_SECONDS: float = Field(15.0, description="Hard timeout per search request")
    TAVILY_RETRY_MAX_TRIES: int = Field(2, description="Retries after the first search attempt")
    TAVILY_RETRY_BACKOFF_BASE_SECONDS: float = 0.4
    OFFICIAL_HTTP_TIMEOUT_SECONDS: float = Field(8.0, description="Hard timeout for the resolver page")
    OFFICIAL_RETRY_MAX_TRIES: int = 1

    # ==== Cache TTLs (seconds) ====
    CACHE_TTL_EVENT: float = Field(6 * 60 * 60, description="Event metadata changes rarely")
    CACHE_TTL_MARKETS: float = 10 * 60
    CACHE_TTL_ORDERBOOK: float = 30
    CACHE_TTL_PRICE: float = 30
    CACHE_TTL_PRICE_HISTORY: float = 10 * 60
    CACHE_TTL_SEARCH: float = Field(24 * 60 * 60, description="Search results are keyed per calendar day")

    # ==== Search pacing & lanes ====
    TAVILY_QPS: float = Field(2.0, description="Steady search rate; <= 0 disables pacing")
    TAVILY_BURST: int = Field(4, ge=1)
    TAVILY_INCLUDE_RAW_CONTENT: bool = True
    TAVILY_INCLUDE_ANSWER: bool = False
    TAVILY_AUTO_PARAMETERS: bool = True
    TAVILY_LANES: Dict[str, LaneConfig] = Field(default_factory=_default_lanes)

    # ==== Market data shaping ====
    ORDERBOOK_TOP_LEVELS: int = Field(10, ge=1)
    ORDERBOOK_WALL_MULTIPLE: float = Field(5.0, gt=0)
    ORDERBOOK_MAX_PROBES: int = Field(8, ge=1, description="Token groups tried before giving up on a book")
    PRICE_HISTORY_WINDOW_HOURS: int = 24
    PRICE_HISTORY_INTERVAL_HOURS: int = 1
    MARKET_SIGNALS_TOP_MARKETS: int = Field(10, ge=1, description="Markets sampled for market-behaviour evidence")

    # ==== Pipeline & batch ====
    BATCH_CONCURRENCY: int = Field(2, ge=1, description="Default concurrent pipeline runs")
    BATCH_MAX_CONCURRENCY: int = Field(10, ge=1, description="Hard cap on concurrent pipeline runs")
    SUPPLEMENT_MAX_ATTEMPTS: int = Field(2, ge=0, description="Extra search/generate/validate cycles")
    EVIDENCE_MAX_AGE_DAYS: int = Field(14, ge=1)

    # ==== Observability toggles ====
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    ENABLE_PROMETHEUS: bool = False
    PROMETHEUS_PORT: int = 9100

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra fields from env

    def model_post_init(self, __context):
        """Validate cross-field constraints after all fields are set"""
        for name in ("MARKET_HTTP_TIMEOUT_SECONDS", "TAVILY_HTTP_TIMEOUT_SECONDS", "OFFICIAL_HTTP_TIMEOUT_SECONDS"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ("MARKET_RETRY_MAX_TRIES", "TAVILY_RETRY_MAX_TRIES", "OFFICIAL_RETRY_MAX_TRIES"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.BATCH_CONCURRENCY > self.BATCH_MAX_CONCURRENCY:
            raise ConfigurationError(
                f"BATCH_CONCURRENCY ({self.BATCH_CONCURRENCY}) exceeds "
                f"BATCH_MAX_CONCURRENCY ({self.BATCH_MAX_CONCURRENCY})"
            )
        missing = [lane for lane in ("A", "B", "C", "D") if lane not in self.TAVILY_LANES]
        if missing:
            raise ConfigurationError(f"Missing lane configs: {', '.join(missing)}")

    def lane(self, lane: str) -> LaneConfig:
        return self.TAVILY_LANES[lane]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
