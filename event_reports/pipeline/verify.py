"""
Relevance and freshness filtering of search results before clustering.
"""

import logging
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models import DroppedEvidence, LaneSearchResult, MarketContext
from ..text.normalize import normalize_text
from ..utils.datetime_safe import parse_datetime

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 3
MAX_KEYWORDS = 20

STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "into", "will", "would",
    "could", "should", "about", "over", "after", "before", "under", "between",
    "against", "when", "where", "what", "which", "while", "https", "http",
}


def extract_keywords(text: Optional[str], limit: int) -> List[str]:
    if not text:
        return []
    keywords: List[str] = []
    for token in normalize_text(text).split():
        if len(token) >= MIN_KEYWORD_LENGTH and token not in STOPWORDS and token not in keywords:
            keywords.append(token)
    return keywords[:limit]


def event_keywords(context: MarketContext) -> List[str]:
    keywords: List[str] = []
    for text, limit in ((context.title, 8), (context.slug, 6), (context.description, 6),
                        (context.resolution_rules_raw, 6), (context.resolution_source_raw, 4)):
        for keyword in extract_keywords(text, limit):
            if keyword not in keywords:
                keywords.append(keyword)
    return keywords[:MAX_KEYWORDS]


def _matches(text: str, keywords: Iterable[str]) -> bool:
    keywords = list(keywords)
    if not keywords:
        return True
    tokens = set(normalize_text(text).split())
    return any(keyword in tokens for keyword in keywords)


def verify_results(context: MarketContext, lane_results: Sequence[LaneSearchResult],
                   max_age_days: int = 14, now: Optional[float] = None
                   ) -> Tuple[List[LaneSearchResult], List[DroppedEvidence]]:
    """
    Drop results without content, stale or undated-garbage results, and results
    sharing no keyword with the event.

    Returns:
        (filtered lane results, dropped evidence records)
    """
    now = time.time() if now is None else now
    max_age = max_age_days * 24 * 60 * 60
    keywords = event_keywords(context)
    kept_lanes: List[LaneSearchResult] = []
    dropped: List[DroppedEvidence] = []

    for lane in lane_results:
        kept = []
        for result in lane.results:
            reason = None
            if not (result.raw_content or "").strip():
                reason = "missing_raw_content"
            elif result.published_at:
                published = parse_datetime(result.published_at)
                if published is None:
                    reason = "invalid_published_at"
                elif now - published.timestamp() > max_age:
                    reason = "stale_published_at"
            if reason is None and not _matches(f"{result.title} {result.raw_content}", keywords):
                reason = "no_keyword_match"

            if reason is None:
                kept.append(result)
            else:
                dropped.append(DroppedEvidence(url=result.url, reason=reason, lane=lane.lane,
                                               query=lane.query, title=result.title,
                                               published_at=result.published_at))
        kept_lanes.append(lane.model_copy(update={"results": kept}))

    if dropped:
        logger.info(f"Dropped {len(dropped)} search results for {context.slug} during verification")
    return kept_lanes, dropped
