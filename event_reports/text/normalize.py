"""
Normalization of URLs, domains and free text used for matching and clustering.
"""

import re
from typing import Optional
from urllib.parse import urlsplit

_URL_RE = re.compile(r"https?://\S+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, drop embedded URLs and collapse everything non-alphanumeric to single spaces."""
    lowered = (text or "").lower()
    lowered = _URL_RE.sub(" ", lowered)
    lowered = _NON_ALNUM_RE.sub(" ", lowered)
    return _WS_RE.sub(" ", lowered).strip()


def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def normalize_domain(value: str) -> str:
    """
    Reduce a URL or host to a bare lowercase host without a leading www.

    >>> normalize_domain("https://WWW.Reuters.com/world")
    'reuters.com'
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    host = trimmed
    if trimmed.startswith(("http://", "https://")):
        try:
            host = urlsplit(trimmed).hostname or trimmed
        except ValueError:
            host = trimmed
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_url(url: str) -> str:
    """
    Canonical URL form used for exact-duplicate detection.

    Lowercases scheme and host, drops a bare "/" path, keeps query and fragment.
    Unparseable input falls back to its trimmed lowercase form.
    """
    trimmed = (url or "").strip()
    if not trimmed:
        return ""
    try:
        parts = urlsplit(trimmed)
        port = parts.port
    except ValueError:
        return trimmed.lower()
    if not parts.scheme or not parts.hostname:
        return trimmed.lower()
    host = parts.hostname.lower()
    if port:
        host = f"{host}:{port}"
    path = parts.path if parts.path and parts.path != "/" else ""
    query = f"?{parts.query}" if parts.query else ""
    fragment = f"#{parts.fragment}" if parts.fragment else ""
    return f"{parts.scheme.lower()}://{host}{path}{query}{fragment}"


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].strip()


def host_of(url: str) -> Optional[str]:
    """Hostname of an absolute URL, or None."""
    try:
        return urlsplit((url or "").strip()).hostname
    except ValueError:
        return None
