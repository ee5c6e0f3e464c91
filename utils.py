#!/usr/bin/env python3
"""
Utility functions shared by the updater, the mapper and the CLI.

Timestamps travel through the system as integer Unix epoch seconds (UTC);
these helpers convert the assorted date shapes the addons emit into that form.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


def to_timestamp(value: Any) -> Optional[int]:
    """Convert assorted date representations into a Unix timestamp.

    Accepts epoch numbers (seconds, or milliseconds when clearly too large to
    be seconds), datetimes, ISO 8601 strings (including a trailing "Z") and
    RFC 2822 strings. Returns None for anything unusable.
    """
    if value in (None, ''):
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        timestamp = int(value)
        # Addons written in JavaScript often hand out Date.now()-style milliseconds
        if timestamp > 10_000_000_000:
            timestamp //= 1000
        return timestamp if timestamp > 0 else None

    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    if isinstance(value, str):
        return _parse_date_string(value.strip())

    return None


def _parse_date_string(date_str: str) -> Optional[int]:
    if not date_str:
        return None
    try:
        iso = date_str[:-1] + "+00:00" if date_str.endswith("Z") else date_str
        dt = datetime.fromisoformat(iso)
    except ValueError:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable date value '{date_str}'")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def cache_break_token(now: float, period_seconds: int) -> int:
    """Return the coarse time bucket used to let upstream caches roll over.

    The value only changes once every `period_seconds`, so responses can be
    cached for a whole period while still picking up updates afterwards.
    """
    return int(now // period_seconds)


def format_timestamp(timestamp: Optional[int]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if timestamp in (None, ""):
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
