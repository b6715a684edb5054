"""Relative time parsing and filter normalization for queries."""

import re
from datetime import datetime, timedelta, timezone

from opswatch.models import EventLevel, MemoryCategory, SessionStatus

RELATIVE_TIME_PATTERN = re.compile(r"^(\d+)(m|h|d|w)$")

TIME_MULTIPLIERS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_since(since: str, now: datetime | None = None) -> str:
    """Convert a relative or absolute time string to an ISO timestamp.

    Accepts:
        "30m", "24h", "7d", "2w": relative to now
        "2026-02-20": date (assumes start of day UTC)
        "2026-02-20T14:00:00": ISO timestamp
    """
    match = RELATIVE_TIME_PATTERN.match(since.strip())
    if match:
        amount = int(match.group(1))
        unit = match.group(2)
        dt = (now or datetime.now(timezone.utc)) - (TIME_MULTIPLIERS[unit] * amount)
        return dt.isoformat()

    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            dt = datetime.strptime(since.strip(), fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.isoformat()
        except ValueError:
            continue

    # Pass through as-is (let SQLite compare it)
    return since


def parse_levels(level_str: str) -> list[EventLevel]:
    """Parse comma-separated event levels."""
    levels = []
    for lv in level_str.split(","):
        lv = lv.strip().lower()
        if lv:
            levels.append(EventLevel(lv))
    return levels


def parse_category(category: str | None) -> MemoryCategory | None:
    if not category:
        return None
    return MemoryCategory(category.strip().lower())


def parse_status(status: str | None) -> SessionStatus | None:
    if not status:
        return None
    return SessionStatus(status.strip().lower())
