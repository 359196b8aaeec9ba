"""Tolerant timestamp parsing for upstream date strings."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse ISO-8601 (with or without "Z") or RFC 2822 dates into aware UTC datetimes.

    Args:
        value: Date string from an upstream payload

    Returns:
        datetime in UTC, or None when absent or unparseable
    """
    if not value or not value.strip():
        return None
    text = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            logger.debug(f"Failed to parse datetime string: {value}")
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_epoch_ms(value: Optional[str]) -> Optional[int]:
    parsed = parse_datetime(value)
    return int(parsed.timestamp() * 1000) if parsed else None
