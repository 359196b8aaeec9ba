"""
Market-data derivations: token selection, price signals, order-book probing
and the liquidity proxy. Everything except `probe_order_book` and
`build_price_context` is pure.
"""

import logging
import math
import statistics
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import (ClobSnapshot, GammaMarket, LiquidityProxy, MarketContext, MarketSignal,
                      OrderBookLevel, PriceContext, PricePoint, PriceSignals)
from ..providers.clob import ClobClient
from ..providers.pricing import PricingClient

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DEPTH_LEVELS = 10
PRICE_HISTORY_INSUFFICIENT = "PRICE_HISTORY_INSUFFICIENT"


def prioritize_yes_token(outcomes: Optional[Sequence[str]], token_ids: Sequence[str]) -> List[str]:
    """
    Return a new token list with the "Yes" outcome's token first.

    Lists of different length, or without a "Yes" outcome, come back unchanged
    (as a copy).
    """
    tokens = list(token_ids)
    if not outcomes or len(outcomes) != len(tokens):
        return tokens
    for index, outcome in enumerate(outcomes):
        if outcome.strip().lower() == "yes" and tokens[index]:
            return [tokens[index]] + tokens[:index] + tokens[index + 1:]
    return tokens


def resolve_primary_market(context: MarketContext) -> Optional[GammaMarket]:
    if not context.markets:
        return None
    if context.primary_market_id:
        for market in context.markets:
            if market.market_id == context.primary_market_id:
                return market
    if len(context.markets) == 1:
        return context.markets[0]
    return None


def select_token_id(context: MarketContext) -> str:
    """The token whose price represents the event, preferring the Yes outcome."""
    primary = resolve_primary_market(context)
    token_ids = context.clob_token_ids or (primary.clob_token_ids if primary else [])
    if not token_ids:
        raise AppError(code=ErrorCode.PROVIDER_PM_PRICING_RESPONSE_INVALID,
                       message="No outcome token available for pricing",
                       category=ErrorCategory.PROVIDER, details={"slug": context.slug})
    return prioritize_yes_token(primary.outcomes if primary else None, token_ids)[0]


@dataclass(frozen=True)
class TokenGroup:
    market_id: Optional[str]
    outcomes: Optional[List[str]]
    token_ids: List[str]


def build_token_groups(context: MarketContext) -> List[TokenGroup]:
    """Primary market first, then the others by descending volume."""
    if not context.markets:
        if context.clob_token_ids:
            return [TokenGroup(None, None, list(context.clob_token_ids))]
        return []
    primary = next((m for m in context.markets if m.market_id == context.primary_market_id), None)
    others = sorted((m for m in context.markets if m is not primary), key=lambda m: -(m.volume or 0.0))
    ordered = ([primary] if primary else []) + others
    groups = []
    for market in ordered:
        tokens = (context.clob_token_ids
                  if market is primary and context.clob_token_ids
                  else market.clob_token_ids)
        if tokens:
            groups.append(TokenGroup(market.market_id, list(market.outcomes), list(tokens)))
    return groups


def score_snapshot(snapshot: ClobSnapshot) -> int:
    """2 for a two-sided book, 1 for one side only, 0 for empty."""
    if not snapshot.book_top_levels:
        return 0
    return 2 if snapshot.bids and snapshot.asks else 1


async def probe_order_book(clob: ClobClient, context: MarketContext,
                           max_probes: int = 8) -> Tuple[ClobSnapshot, Optional[str], Optional[str]]:
    """
    Find the most useful order book among the event's markets.

    Probes up to `max_probes` token groups and stops at the first two-sided
    book. A failing token is skipped; if every probe failed the last error is
    raised.

    Returns:
        (snapshot, market_id_used, token_id_used)
    """
    groups = build_token_groups(context)
    if not groups:
        raise AppError(code=ErrorCode.PROVIDER_PM_CLOB_RESPONSE_INVALID,
                       message="No outcome token available for the order book",
                       category=ErrorCategory.PROVIDER, details={"slug": context.slug})

    best: Optional[Tuple[ClobSnapshot, Optional[str], str]] = None
    best_score = -1
    last_error: Optional[AppError] = None
    for group in groups[:max_probes]:
        for token_id in prioritize_yes_token(group.outcomes, group.token_ids):
            try:
                snapshot = await clob.get_order_book_summary(token_id)
            except AppError as e:
                logger.warning(f"Order book probe failed for token {token_id}: {e.code}")
                last_error = e
                continue
            score = score_snapshot(snapshot)
            if score > best_score:
                best, best_score = (snapshot, group.market_id, token_id), score
            if score == 2:
                return snapshot, group.market_id, token_id

    if best is not None:
        return best
    if last_error is not None:
        raise last_error
    return ClobSnapshot(), None, None


def _find_at_or_before(points: Sequence[PricePoint], target_ms: float) -> Optional[PricePoint]:
    for point in reversed(points):
        if point.ts <= target_ms:
            return point
    return None


def compute_price_signals(history: Sequence[PricePoint]) -> Tuple[PriceSignals, List[str]]:
    """
    Derive change, volatility, range, trend and spike signals from a price series.

    Returns:
        (signals, warnings); with fewer than two points every signal is None
        and PRICE_HISTORY_INSUFFICIENT is reported
    """
    points = sorted(history, key=lambda p: p.ts)
    if len(points) < 2:
        return PriceSignals(), [PRICE_HISTORY_INSUFFICIENT]

    first, last = points[0], points[-1]

    def change_over(hours: int) -> Optional[float]:
        anchor = _find_at_or_before(points, last.ts - hours * HOUR_MS)
        return last.price - anchor.price if anchor else None

    deltas = [b.price - a.price for a, b in zip(points, points[1:])]
    volatility = statistics.pstdev(deltas) if len(deltas) >= 2 else None
    abs_deltas = [abs(d) for d in deltas]

    spike_flag = None
    if len(abs_deltas) >= 2:
        threshold = max(4 * (volatility or 0.0), 3 * statistics.median(abs_deltas))
        spike_flag = False if threshold <= 0 else max(abs_deltas) >= threshold

    prices = [p.price for p in points]
    hours = (last.ts - first.ts) / HOUR_MS
    signals = PriceSignals(
        change_1h=change_over(1),
        change_4h=change_over(4),
        change_24h=change_over(24),
        volatility_24h=volatility,
        range_high_24h=max(prices),
        range_low_24h=min(prices),
        trend_slope_24h=(last.price - first.price) / hours if hours > 0 else None,
        spike_flag=spike_flag,
    )
    return signals, []


async def build_price_context(pricing: PricingClient, token_id: str,
                              window_hours: int = 24, interval_hours: int = 1) -> PriceContext:
    latest = await pricing.get_market_price(token_id)
    midpoint = await pricing.get_midpoint_price(token_id)
    history = await pricing.get_price_history(token_id, window_hours, interval_hours)
    signals, warnings = compute_price_signals(history)
    if warnings:
        logger.info(f"Price history for {token_id} has {len(history)} point(s); signals unavailable")
    return PriceContext(
        token_id=token_id,
        latest_price=latest,
        midpoint_price=midpoint,
        history_24h=list(history),
        signals=signals,
        warnings=warnings,
    )


def _top_depth(levels: Sequence[OrderBookLevel], side: str) -> float:
    same_side = [level for level in levels if level.side == side]
    same_side.sort(key=lambda level: -level.price if side == "bid" else level.price)
    return math.fsum(level.size for level in same_side[:DEPTH_LEVELS])


def build_liquidity_proxy(context: MarketContext, snapshot: ClobSnapshot) -> LiquidityProxy:
    """Gamma liquidity plus top-of-book depth, spread, midpoint and walls."""
    primary = resolve_primary_market(context)
    gamma_liquidity = primary.liquidity if primary and primary.liquidity is not None else context.liquidity
    return LiquidityProxy(
        gamma_liquidity=gamma_liquidity,
        book_depth_top10=_top_depth(snapshot.book_top_levels, "bid") + _top_depth(snapshot.book_top_levels, "ask"),
        spread=snapshot.spread,
        midpoint=snapshot.midpoint,
        notable_walls=list(snapshot.notable_walls),
    )


def market_signal(price_context: PriceContext, snapshot: ClobSnapshot) -> MarketSignal:
    return MarketSignal(price_context=price_context, clob_snapshot=snapshot)


PRICE_API_FAILED = "PRICE_API_FAILED"
DEFAULT_TOP_MARKETS = 10


def market_score(market: GammaMarket) -> float:
    """Volume when known, else liquidity, else 0."""
    if market.volume is not None:
        return market.volume
    if market.liquidity is not None:
        return market.liquidity
    return 0.0


def build_market_order(context: MarketContext) -> List[GammaMarket]:
    """Primary market first, then the rest by descending score."""
    primary = None
    if context.primary_market_id:
        primary = next((m for m in context.markets if m.market_id == context.primary_market_id), None)
    others = sorted((m for m in context.markets if m is not primary), key=lambda m: -market_score(m))
    return ([primary] if primary else []) + others


def market_tokens(market: GammaMarket, context: MarketContext) -> List[str]:
    if market.market_id == context.primary_market_id and context.clob_token_ids:
        tokens = context.clob_token_ids
    else:
        tokens = market.clob_token_ids
    return prioritize_yes_token(market.outcomes, tokens)


def price_failure_context(token_id: str, error: AppError, fallback_midpoint: Optional[float]) -> PriceContext:
    """Price context for a token whose pricing calls failed, seeded from the book midpoint."""
    logger.warning(f"Pricing failed for token {token_id} ({error.code}); "
                   f"midpoint fallback {'used' if fallback_midpoint is not None else 'unavailable'}")
    return PriceContext(
        token_id=token_id,
        latest_price=fallback_midpoint,
        midpoint_price=fallback_midpoint,
        signals=PriceSignals(),
        warnings=[PRICE_API_FAILED],
    )


async def fetch_market_signals(clob: ClobClient, pricing: PricingClient, context: MarketContext,
                               top_markets: int = DEFAULT_TOP_MARKETS,
                               window_hours: int = 24, interval_hours: int = 1) -> List[MarketSignal]:
    """
    Order-book and price observations for every outcome token of the top markets.

    A failing order book degrades to an empty snapshot and a failing price
    lookup to the book midpoint, so every token yields one signal.
    """
    signals: List[MarketSignal] = []
    for market in build_market_order(context)[:max(0, top_markets)]:
        for token_id in market_tokens(market, context):
            try:
                snapshot = await clob.get_order_book_summary(token_id)
            except AppError as e:
                logger.warning(f"Order book unavailable for token {token_id}: {e.code}")
                snapshot = ClobSnapshot()
            try:
                price_context = await build_price_context(pricing, token_id, window_hours, interval_hours)
            except AppError as e:
                price_context = price_failure_context(token_id, e, snapshot.midpoint)
            signals.append(MarketSignal(market_id=market.market_id, token_id=token_id,
                                        price_context=price_context, clob_snapshot=snapshot))
    return signals
