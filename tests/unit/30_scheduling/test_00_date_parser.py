# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for scheduled-send time resolution."""

from datetime import datetime, time, timedelta, timezone

import pytest

from inbound_relay.date_parser import parse_schedule_time, parse_time_of_day
from inbound_relay.errors import InvalidInput, TooSoon

NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


class TestRelative:
    @pytest.mark.parametrize(
        "expression, delta",
        [
            ("in 5 minutes", timedelta(minutes=5)),
            ("in 1 min", timedelta(minutes=1)),
            ("in 2 hours", timedelta(hours=2)),
            ("In 1 HR", timedelta(hours=1)),
            ("in 3 days", timedelta(days=3)),
        ],
    )
    def test_relative_expressions(self, expression, delta):
        assert parse_schedule_time(expression, now=NOW) == NOW + delta


class TestWallClock:
    def test_tomorrow_in_timezone(self):
        """Wall-clock expressions are evaluated in the caller's zone."""
        when = parse_schedule_time("tomorrow at 9am", now=NOW, tz="Europe/Rome")
        assert when == datetime(2025, 7, 2, 7, 0, tzinfo=timezone.utc)

    def test_today_24h(self):
        when = parse_schedule_time("today at 14:30", now=NOW)
        assert when == datetime(2025, 7, 1, 14, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "value, expected",
        [("9am", time(9, 0)), ("12am", time(0, 0)), ("12:15pm", time(12, 15)), ("23:59", time(23, 59)),
         ("13pm", None), ("25:00", None)],
    )
    def test_time_of_day(self, value, expected):
        assert parse_time_of_day(value) == expected


class TestIso:
    def test_iso_with_offset(self):
        when = parse_schedule_time("2025-07-01T16:00:00+02:00", now=NOW)
        assert when == datetime(2025, 7, 1, 14, 0, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        assert parse_schedule_time("2025-07-01T13:00:00", now=NOW) == datetime(2025, 7, 1, 13, 0, tzinfo=timezone.utc)

    def test_datetime_input(self):
        later = NOW + timedelta(hours=1)
        assert parse_schedule_time(later, now=NOW) == later


class TestRejections:
    def test_unparseable(self):
        """Words the resolver does not know are invalid input, naming the expression."""
        with pytest.raises(InvalidInput, match='"yesterday"'):
            parse_schedule_time("yesterday", now=NOW)

    def test_past_is_too_soon(self):
        """A time one minute in the past is too soon, not invalid."""
        with pytest.raises(TooSoon) as excinfo:
            parse_schedule_time(NOW - timedelta(minutes=1), now=NOW)
        assert excinfo.value.earliest == NOW + timedelta(minutes=1)

    def test_inside_min_lead_is_too_soon(self):
        with pytest.raises(TooSoon):
            parse_schedule_time(NOW + timedelta(seconds=30), now=NOW)

    def test_exactly_min_lead_is_accepted(self):
        assert parse_schedule_time(NOW + timedelta(minutes=1), now=NOW) == NOW + timedelta(minutes=1)

    def test_beyond_horizon(self):
        with pytest.raises(InvalidInput):
            parse_schedule_time("in 400 days", now=NOW)

    @pytest.mark.parametrize(
        "expression",
        ["in 99999999999 days", "in 9999999 days", "9999-12-31T23:59:00-05:00"],
    )
    def test_out_of_range_is_invalid_input(self, expression):
        """Times past the datetime range are rejected like any other far date."""
        with pytest.raises(InvalidInput, match="1 year"):
            parse_schedule_time(expression, now=NOW)

    def test_unknown_timezone(self):
        with pytest.raises(InvalidInput):
            parse_schedule_time("in 5 minutes", now=NOW, tz="Mars/Olympus")

    def test_empty(self):
        with pytest.raises(InvalidInput):
            parse_schedule_time("   ", now=NOW)
