"""
Near-duplicate clustering of search hits into evidence candidates.

Hits are deduplicated by normalized URL, grouped greedily by bigram Dice
similarity of "<domain> <title>" keys, and each group keeps exactly one
canonical member (repeated=False). Ordering is deterministic for a given
input set.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
from urllib.parse import quote

from ..models import EvidenceCandidate, LaneSearchResult, MarketSignal, OfficialSource, SearchResult
from ..text.normalize import normalize_domain, normalize_text, normalize_url, truncate_text
from ..text.similarity import dice_coefficient
from ..utils.datetime_safe import to_epoch_ms
from .source_types import SOURCE_PRIORITY, resolve_source_type
from .stance import resolve_stance

logger = logging.getLogger(__name__)

MAX_CLAIM_CHARS = 280
SIMILARITY_THRESHOLD = 0.9
MARKET_EVIDENCE_LANE = "market"
MARKET_EVIDENCE_QUERY = "market_signals"
OFFICIAL_EVIDENCE_LANE = "official"
OFFICIAL_EVIDENCE_QUERY = "resolver"
DEFAULT_MARKET_URL = "https://polymarket.com/event"


@dataclass
class _Candidate:
    source_type: str
    url: str
    domain: str
    published_at: Optional[str]
    claim: str
    stance: str
    lane: str
    query: str
    normalized_url: str
    similarity_key: str
    published_at_ms: Optional[int]

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self.source_type]

    def canonical_order(self):
        """Sort key: source priority, earliest time (missing last), url, lane, query."""
        has_time = self.published_at_ms is not None
        return (
            self.priority,
            0 if has_time else 1,
            self.published_at_ms if has_time else 0,
            self.normalized_url,
            self.lane,
            self.query,
        )

    def emit(self, repeated: bool) -> EvidenceCandidate:
        return EvidenceCandidate(
            source_type=self.source_type,
            url=self.url,
            domain=self.domain,
            published_at=self.published_at,
            claim=self.claim,
            stance=self.stance,
            repeated=repeated,
            lane=self.lane,
            query=self.query,
            similarity_key=self.similarity_key,
        )


def similarity_key(domain: str, title: str) -> str:
    return f"{normalize_domain(domain)} {normalize_text(title)}".strip()


def build_claim(result: SearchResult) -> str:
    base = (result.raw_content or "").strip() or (result.title or "").strip() or result.url.strip()
    return truncate_text(base, MAX_CLAIM_CHARS)


def _from_search_result(lane: LaneSearchResult, result: SearchResult) -> Optional[_Candidate]:
    url = (result.url or "").strip()
    if not url:
        return None
    normalized = normalize_url(url)
    domain = normalize_domain(result.domain or url)
    if not domain:
        return None
    claim = build_claim(result)
    return _Candidate(
        source_type=resolve_source_type(lane.lane, domain, url),
        url=url,
        domain=domain,
        published_at=result.published_at,
        claim=claim,
        stance=resolve_stance(claim),
        lane=lane.lane,
        query=lane.query,
        normalized_url=normalized,
        similarity_key=similarity_key(domain, result.title or url) or normalized,
        published_at_ms=to_epoch_ms(result.published_at),
    )


def _signed_pct(value: float) -> str:
    pct = value * 100
    if abs(pct) < 0.05:
        return "0.0%"
    return f"{'+' if pct > 0 else '-'}{abs(pct):.1f}%"


def market_claim(signal: MarketSignal) -> str:
    """One-line summary of market behaviour, or "" when nothing is observable."""
    parts = []
    change = signal.price_context.signals.change_24h
    if change is not None:
        parts.append(f"24h price change {_signed_pct(change)}")
    spread = signal.clob_snapshot.spread
    if spread is not None:
        parts.append(f"order book spread {spread:.4f}")
    walls = len(signal.clob_snapshot.notable_walls)
    if walls:
        parts.append(f"{walls} notable wall{'s' if walls != 1 else ''} detected")
    if signal.price_context.signals.spike_flag is True:
        parts.append("price spike detected")
    if not parts:
        return ""
    return "Market behavior: " + "; ".join(parts)


def select_market_signal(signals: Sequence[MarketSignal]) -> Optional[MarketSignal]:
    """First signal with any observable change, spread or wall; else the first one."""
    for signal in signals:
        if (signal.price_context.signals.change_24h is not None
                or signal.clob_snapshot.notable_walls
                or signal.clob_snapshot.spread is not None):
            return signal
    return signals[0] if signals else None


def _market_candidate(event_slug: str, signals: Sequence[MarketSignal],
                      market_url_base: str) -> Optional[_Candidate]:
    signal = select_market_signal(signals)
    if signal is None:
        return None
    claim = market_claim(signal)
    if not claim:
        return None
    slug = event_slug.strip()
    base = market_url_base.rstrip("/")
    url = f"{base}/{quote(slug, safe='')}" if slug else base.rsplit("/event", 1)[0]
    normalized = normalize_url(url)
    domain = normalize_domain(url)
    return _Candidate(
        source_type="market",
        url=url,
        domain=domain,
        published_at=None,
        claim=truncate_text(claim, MAX_CLAIM_CHARS),
        stance="neutral",
        lane=MARKET_EVIDENCE_LANE,
        query=MARKET_EVIDENCE_QUERY,
        normalized_url=normalized,
        similarity_key=similarity_key(domain, claim) or normalized,
        published_at_ms=None,
    )


def _official_candidate(source: OfficialSource) -> Optional[_Candidate]:
    url = (source.url or "").strip()
    domain = normalize_domain(source.domain or url)
    if not url or not domain:
        return None
    claim = truncate_text((source.snippet or "").strip() or (source.title or "").strip() or url, MAX_CLAIM_CHARS)
    normalized = normalize_url(url)
    return _Candidate(
        source_type="official",
        url=url,
        domain=domain,
        published_at=source.published_at,
        claim=claim,
        stance=resolve_stance(claim),
        lane=OFFICIAL_EVIDENCE_LANE,
        query=OFFICIAL_EVIDENCE_QUERY,
        normalized_url=normalized,
        similarity_key=similarity_key(domain, source.title or url) or normalized,
        published_at_ms=to_epoch_ms(source.published_at),
    )


def group_by_similarity(candidates: Iterable[_Candidate],
                        threshold: float = SIMILARITY_THRESHOLD) -> List[List[_Candidate]]:
    """Greedy single pass: join the first group whose anchor is similar enough."""
    groups: List[List[_Candidate]] = []
    for candidate in candidates:
        for group in groups:
            if dice_coefficient(candidate.similarity_key, group[0].similarity_key) >= threshold:
                group.append(candidate)
                break
        else:
            groups.append([candidate])
    return groups


def build_evidence_candidates(lane_results: Sequence[LaneSearchResult],
                              event_slug: str = "",
                              market_signals: Sequence[MarketSignal] = (),
                              market_url_base: str = DEFAULT_MARKET_URL,
                              official_sources: Sequence[OfficialSource] = ()) -> List[EvidenceCandidate]:
    """
    Turn lane search results into ordered evidence candidates.

    Args:
        lane_results: Search results per lane, in plan order
        event_slug: Used for the market-behaviour candidate link
        market_signals: Optional market observations; the first informative one
            becomes an extra "market" candidate
        market_url_base: Prefix for the market-behaviour candidate link
        official_sources: Pages fetched from the resolution source, emitted as
            "official" candidates

    Returns:
        Candidates grouped by cluster; within a cluster the canonical member
        comes first and the rest are marked repeated
    """
    seen_urls = set()
    candidates: List[_Candidate] = []

    pending: List[Optional[_Candidate]] = []
    pending.extend(_official_candidate(source) for source in official_sources)
    if market_signals:
        pending.append(_market_candidate(event_slug, market_signals, market_url_base))
    for lane in lane_results:
        pending.extend(_from_search_result(lane, result) for result in lane.results)

    for candidate in pending:
        if candidate is None or candidate.normalized_url in seen_urls:
            continue
        seen_urls.add(candidate.normalized_url)
        candidates.append(candidate)

    candidates.sort(key=lambda c: (c.similarity_key, c.normalized_url))
    groups = group_by_similarity(candidates)

    evidence: List[EvidenceCandidate] = []
    for group in groups:
        ordered = sorted(group, key=_Candidate.canonical_order)
        evidence.extend(item.emit(repeated=index != 0) for index, item in enumerate(ordered))

    logger.info(f"Built {len(evidence)} evidence candidates in {len(groups)} clusters "
                f"from {len(pending)} hits")
    return evidence
