"""Upstream provider clients: market metadata, order book, pricing, web search and resolver pages."""

from .clob import ClobClient
from .gamma import GammaClient
from .official import OfficialSourceClient
from .pricing import PricingClient
from .tavily import TavilyClient

__all__ = ["ClobClient", "GammaClient", "OfficialSourceClient", "PricingClient", "TavilyClient"]
