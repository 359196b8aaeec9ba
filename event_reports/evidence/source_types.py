"""Source-type classification for evidence URLs."""

from __future__ import annotations
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Tuple

import yaml

from ..text.normalize import normalize_domain

logger = logging.getLogger(__name__)

# Lower sorts first when choosing the canonical member of a cluster
SOURCE_PRIORITY = {"official": 0, "media": 1, "market": 2, "social": 3, "onchain": 4}

DEFAULT_SOURCE_TYPE_BY_LANE = {"A": "media", "B": "media", "C": "media", "D": "social"}


@dataclass(frozen=True)
class SourceDomains:
    social: FrozenSet[str]
    market: FrozenSet[str]
    official: FrozenSet[str]
    media: FrozenSet[str]
    onchain: FrozenSet[str]
    official_path_hints: Tuple[str, ...]


@functools.lru_cache(maxsize=1)
def load_source_domains() -> SourceDomains:
    """Load domain lists from resources/source_domains.yaml."""
    path = Path(__file__).resolve().parents[1] / "resources" / "source_domains.yaml"
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    def domains(key: str) -> FrozenSet[str]:
        return frozenset(normalize_domain(d) for d in cfg.get(key) or [])

    return SourceDomains(
        social=domains("social"),
        market=domains("market"),
        official=domains("official"),
        media=domains("media"),
        onchain=domains("onchain"),
        official_path_hints=tuple(h.lower() for h in cfg.get("official_path_hints") or []),
    )


def is_official(domain: str, url: str, domains: SourceDomains) -> bool:
    """Known official host, government/military TLD, or a press-release style path."""
    host = normalize_domain(domain)
    if host in domains.official:
        return True
    if host.endswith(".gov") or ".gov." in host or host.endswith(".mil"):
        return True
    lowered = url.lower()
    return any(hint in lowered for hint in domains.official_path_hints)


def resolve_source_type(lane: str, domain: str, url: str,
                        allow_onchain: bool = False) -> str:
    """
    Classify a search hit.

    Lane intent wins first (chatter is social, official hosts found by the
    primary lane are official, known media found by update/counter lanes are
    media); then host lists; then the lane default.
    """
    domains = load_source_domains()
    host = normalize_domain(domain)

    if lane == "D":
        return "social"
    if lane == "B" and is_official(host, url, domains):
        return "official"
    if lane in ("A", "C") and host in domains.media:
        return "media"

    if host in domains.social:
        return "social"
    if host in domains.market:
        return "market"
    if allow_onchain and host in domains.onchain:
        return "onchain"
    if is_official(host, url, domains):
        return "official"
    if host in domains.media:
        return "media"
    return DEFAULT_SOURCE_TYPE_BY_LANE.get(lane, "media")
