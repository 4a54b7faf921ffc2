"""Shared utility helpers used across connectors, agents and services."""

import re
from datetime import datetime, timezone

_PRICE_RE = re.compile(r"[^0-9.]")


def safe_int(v):
    """Safely convert a value to int, returning None on failure."""
    if v is None:
        return None
    try:
        return int(v)
    except (ValueError, TypeError):
        return None


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None:
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def parse_price(text) -> float | None:
    """Parse a displayed price ("$1,299.50", "USD 12.00") into a float.

    Returns None when no number can be recovered.
    """
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text)
    cleaned = _PRICE_RE.sub("", str(text))
    # "12.00." from trailing punctuation
    cleaned = cleaned.strip(".")
    if not cleaned or cleaned.count(".") > 1:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt
