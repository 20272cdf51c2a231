"""
Unit tests -- temporal context and string similarity helpers.
"""
from datetime import datetime, timezone

from flipquery.core.utils import levenshtein_distance, similarity_score, temporal_context, timer


def test_temporal_context_on_a_monday():
    ctx = temporal_context(now=datetime(2024, 1, 15, 12, 0), tz="UTC")
    assert ctx["currentDate"] == "2024-01-15"
    assert ctx["currentYear"] == 2024
    assert ctx["currentMonth"] == 1
    assert ctx["currentDayOfWeek"] == 1
    assert ctx["dayName"] == "Monday"
    assert ctx["timezone"] == "UTC"


def test_recent_days_are_strictly_before_today():
    ctx = temporal_context(now=datetime(2024, 1, 15, 12, 0), tz="UTC")
    days = ctx["recentDays"]
    assert days["lastSunday"] == "2024-01-14"
    assert days["lastMonday"] == "2024-01-08"   # today is Monday -> a week back
    assert days["lastTuesday"] == "2024-01-09"
    assert days["lastSaturday"] == "2024-01-13"
    assert len(days) == 7


def test_aware_datetime_converted_to_zone():
    now = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
    ctx = temporal_context(now=now, tz="America/New_York")
    assert ctx["currentDate"] == "2024-01-14"
    assert ctx["dayName"] == "Sunday"
    assert ctx["currentDayOfWeek"] == 0


def test_levenshtein_distance():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("whip", "whip") == 0
    assert levenshtein_distance("", "abc") == 3


def test_similarity_score():
    assert similarity_score("profit", "profit") == 1.0
    assert similarity_score("", "") == 1.0
    assert 0.0 < similarity_score("profits", "profit") < 1.0


def test_timer_records_elapsed():
    with timer() as t:
        pass
    assert t["elapsed_ms"] >= 0
