"""
Small shared utilities.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator
from zoneinfo import ZoneInfo

from flipquery.core.config import get_settings

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def temporal_context(now: datetime | None = None, tz: str | None = None) -> dict[str, Any]:
    """Describe "today" for the SQL generator.

    Days of week are numbered 0=Sunday .. 6=Saturday.  ``recentDays`` maps
    ``lastMonday`` etc. to the most recent such day strictly before today.
    """
    tz_name = tz or get_settings().timezone
    zone = ZoneInfo(tz_name)
    if now is None:
        local = datetime.now(zone)
    elif now.tzinfo is None:
        local = now
    else:
        local = now.astimezone(zone)

    today = local.date()
    current_day = (today.weekday() + 1) % 7

    recent_days: dict[str, str] = {}
    for target, name in enumerate(_DAY_NAMES):
        days_back = current_day - target
        if days_back <= 0:
            days_back += 7
        recent_days[f"last{name}"] = (today - timedelta(days=days_back)).isoformat()

    return {
        "currentDate": today.isoformat(),
        "currentYear": today.year,
        "currentMonth": today.month,
        "currentDayOfWeek": current_day,
        "dayName": _DAY_NAMES[current_day],
        "timezone": tz_name,
        "recentDays": recent_days,
    }


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert / delete / substitute all cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity_score(a: str, b: str) -> float:
    """1.0 for identical strings, falling towards 0.0 as edits pile up."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(a, b)) / longer
