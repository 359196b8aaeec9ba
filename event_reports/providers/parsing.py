"""Tolerant extraction helpers for loosely-typed upstream payloads."""

import json
import math
from typing import Any, Iterable, List, Mapping, Optional


def to_number(value: Any) -> Optional[float]:
    """Finite float from a number or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def first_text(data: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    """First non-blank string (or number rendered as string) among keys."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def first_number(data: Mapping[str, Any], keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        number = to_number(data.get(key))
        if number is not None:
            return number
    return None


def parse_list(value: Any) -> Optional[List[Any]]:
    """
    Accept a list or a JSON-encoded list string.

    Returns None when the value is neither, so callers can tell
    "missing" from "empty".
    """
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return None
        return decoded if isinstance(decoded, list) else None
    return None


def extract_array(payload: Any, keys: Iterable[str]) -> Optional[List[Any]]:
    """Array at the top level or under the first matching key."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return None
