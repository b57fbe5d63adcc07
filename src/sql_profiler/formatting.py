"""Formatting utilities for consistent output across CLI and TUI."""

import re

_WHITESPACE = re.compile(r"\s+")


def format_ms(ms: int | float) -> str:
    """Format a millisecond duration compactly.

    Args:
        ms: Duration in milliseconds

    Returns:
        Formatted duration string:
        - Under a second: "250ms"
        - Under a minute: "1.5s"
        - Otherwise: "2.3m"
    """
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60_000:.1f}m"


def format_count(n: int) -> str:
    """Format a counter with thousands separators ("12,345")."""
    return f"{n:,}"


def one_line_sql(text: str, limit: int = 80) -> str:
    """Collapse whitespace and truncate SQL for single-line display.

    Args:
        text: SQL text, possibly spanning many lines
        limit: Max characters before the "..." suffix (0 = no limit)

    Returns:
        Cleaned text, truncated with "..." if longer than limit
    """
    cleaned = _WHITESPACE.sub(" ", text).strip()
    if limit and len(cleaned) > limit:
        return cleaned[:limit] + "..."
    return cleaned


def extract_time(timestamp: str) -> str:
    """Return the time-of-day part of an ISO timestamp ("HH:MM:SS.mmm").

    Server timestamps are already in server-local or UTC time; no zone
    conversion is done. Values without a date/time separator pass through.
    """
    if not timestamp:
        return ""
    _, sep, time_part = timestamp.replace(" ", "T", 1).partition("T")
    if not sep:
        return timestamp
    return time_part[:12]
