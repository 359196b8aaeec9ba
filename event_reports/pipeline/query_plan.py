"""
Search query planning per evidence lane.

Lane A looks for the latest update, lane B for an official statement, lane C
for controversy or fact checks and lane D (added on supplement) for chatter.
"""

import re
from typing import List, Optional

from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import LaneQuery, MarketContext, QueryPlan
from ..text.normalize import normalize_whitespace
from ..utils.datetime_safe import parse_datetime

MAX_QUERY_CHARS = 400
MAX_SUBJECT_WORDS = 6
MAX_OBJECT_WORDS = 12
FALLBACK_SUBJECT = "event"
FALLBACK_OBJECT = "resolution"
FALLBACK_TIME_ANCHOR = "this week"

ACTION_KEYWORDS = (
    "nominate", "win", "approve", "ban", "launch", "announce", "settle", "pass",
    "reject", "delay", "acquire", "merge", "resign", "appoint", "elect", "lose",
    "raise", "cut", "issue",
)

STOP_ENTITY_WORDS = {
    "a", "an", "the", "is", "are", "be", "to", "will", "would", "should",
    "could", "can", "may", "on", "in", "for",
}

SUPPLEMENT_SUFFIXES = {
    "A": ("breaking news", "latest developments"),
    "B": ("official announcement press release", "government OR company filing"),
    "C": ("analysis criticism", "doubts OR denial"),
    "D": ("reddit OR twitter discussion", "community reaction"),
}

_TICKER_RE = re.compile(r"\$[A-Z0-9]{2,10}\b")
_CAPITALIZED_RE = re.compile(r"\b[A-Z][A-Za-z0-9&.-]*(?:\s+[A-Z][A-Za-z0-9&.-]*){0,2}\b")
_WILL_RE = re.compile(r"\bwill\s+([a-z0-9-]+)")
_TO_RE = re.compile(r"\bto\s+([a-z0-9-]+)")


def _limit_words(text: str, max_words: int) -> str:
    return " ".join(normalize_whitespace(text).split(" ")[:max_words]).strip()


def extract_subject_entities(text: str) -> List[str]:
    """Tickers and capitalized phrases, at most three; else the leading words."""
    normalized = normalize_whitespace(text)
    if not normalized:
        return []
    entities: List[str] = []
    for match in _TICKER_RE.findall(normalized):
        if match[1:] not in entities:
            entities.append(match[1:])
    for match in _CAPITALIZED_RE.findall(normalized):
        candidate = match.strip()
        if candidate and candidate.lower() not in STOP_ENTITY_WORDS and candidate not in entities:
            entities.append(candidate)
    entities = [e for e in entities if len(e) > 1]
    if entities:
        return entities[:3]
    fallback = _limit_words(normalized, MAX_SUBJECT_WORDS)
    return [fallback] if fallback else []


def extract_action(text: str) -> str:
    normalized = normalize_whitespace(text).lower()
    for keyword in ACTION_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", normalized):
            return keyword
    for pattern in (_WILL_RE, _TO_RE):
        match = pattern.search(normalized)
        if match:
            return match.group(1)
    return "update"


def extract_object(text: str, action: str) -> str:
    normalized = normalize_whitespace(text)
    if not normalized:
        return ""
    if action:
        match = re.search(rf"\b{re.escape(action)}\b", normalized, re.IGNORECASE)
        if match:
            after = normalized[match.end():].strip()
            if after:
                return _limit_words(after, MAX_OBJECT_WORDS)
    return _limit_words(normalized, MAX_OBJECT_WORDS)


def time_anchor(end_time: Optional[str]) -> str:
    parsed = parse_datetime(end_time)
    return f"before {parsed.strftime('%Y-%m-%d')}" if parsed else FALLBACK_TIME_ANCHOR


def finalize_query(query: str) -> str:
    normalized = normalize_whitespace(query)
    return normalized if len(normalized) <= MAX_QUERY_CHARS else normalized[:MAX_QUERY_CHARS].strip()


def _empty_input(context: MarketContext, message: str) -> AppError:
    return AppError(code=ErrorCode.STEP_QUERY_PLAN_EMPTY_INPUT, message=message,
                    category=ErrorCategory.VALIDATION, details={"event_slug": context.slug})


def build_query_plan(context: MarketContext) -> QueryPlan:
    """Build lane A/B/C queries from the event's title, description and rules."""
    text_parts = [part.strip() for part in (context.title, context.description, context.resolution_rules_raw)
                  if part and part.strip()]
    if not text_parts and not (context.end_time or "").strip():
        raise _empty_input(context, "Missing inputs for search query plan")

    fallback_text = normalize_whitespace(" ".join(text_parts))
    subject_source = text_parts[0] if text_parts else fallback_text
    subject = " ".join(extract_subject_entities(subject_source))
    action = extract_action(fallback_text or subject_source)
    object_source = next((p for p in (context.description, context.resolution_rules_raw, context.title)
                          if p and p.strip()), "")
    obj = extract_object(object_source, action) or FALLBACK_OBJECT
    anchor = time_anchor(context.end_time)

    topic_core = normalize_whitespace(" ".join(
        part for part in (subject or fallback_text or FALLBACK_SUBJECT, action, obj) if part
    ))
    primary = f"{subject} official statement {obj}" if subject else f"{topic_core} official announcement"

    lanes = [
        LaneQuery(lane="A", query=finalize_query(f"{topic_core} latest update {anchor}")),
        LaneQuery(lane="B", query=finalize_query(f"{primary} {anchor}")),
        LaneQuery(lane="C", query=finalize_query(f"{topic_core} controversy OR fact check {anchor}")),
    ]
    if any(not lane.query for lane in lanes):
        raise _empty_input(context, "Generated empty search query")
    return QueryPlan(lanes=lanes)


def widen_query_plan(plan: QueryPlan, attempt: int, preferred_lane: Optional[str] = None) -> QueryPlan:
    """
    Plan for supplement attempt `attempt` (1-based).

    The preferred lane (default C) gets an extra query with a lane-specific
    suffix, and lane D chatter is added if the plan lacks it. Existing lanes
    are kept so cached results are reused.
    """
    lanes = list(plan.lanes)
    base = {item.lane: item.query for item in plan.lanes}
    core = base.get("A") or (lanes[0].query if lanes else "")
    core = re.sub(r"\s+latest update\b", "", core)

    target = preferred_lane if preferred_lane in SUPPLEMENT_SUFFIXES else "C"
    suffixes = SUPPLEMENT_SUFFIXES[target]
    extra = finalize_query(f"{core} {suffixes[(attempt - 1) % len(suffixes)]}")
    if extra and all(item.query != extra for item in lanes):
        lanes.append(LaneQuery(lane=target, query=extra))
    if "D" not in base:
        lanes.append(LaneQuery(lane="D", query=finalize_query(f"{core} {SUPPLEMENT_SUFFIXES['D'][0]}")))
    return QueryPlan(lanes=lanes)
