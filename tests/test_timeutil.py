"""Tests for timestamp parsing helpers."""

from datetime import date, datetime, timedelta, timezone

import pytest

from loregraph.timeutil import days_since, format_relative_time, parse_timestamp

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [
    "2025-01-15T14:30:00Z",
    "2025-01-15T14:30:00+00:00",
    "2025-01-15 14:30:00",
])
def test_parse_timestamp_is_utc(value):
    parsed = parse_timestamp(value)
    assert parsed == datetime(2025, 1, 15, 14, 30, tzinfo=timezone.utc)


def test_parse_date_only():
    assert parse_timestamp("2025-01-15").date() == date(2025, 1, 15)


@pytest.mark.parametrize("value", [None, "", "not a date"])
def test_parse_timestamp_bad_input(value):
    assert parse_timestamp(value) is None


def test_days_since():
    assert days_since((NOW - timedelta(days=2)).isoformat(), now=NOW) == pytest.approx(2.0)
    assert days_since(None, now=NOW) == 0.0
    assert days_since((NOW + timedelta(days=2)).isoformat(), now=NOW) == 0.0


def test_format_relative_time():
    assert format_relative_time(NOW - timedelta(days=3), now=NOW) == "3 days ago"
    assert format_relative_time(NOW - timedelta(hours=1), now=NOW) == "1 hour ago"
    assert format_relative_time(NOW + timedelta(days=1), now=NOW) == "in the future"
