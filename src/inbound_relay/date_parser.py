# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Resolution of scheduled-send times.

Accepted forms:

- ISO 8601 timestamps (``2025-08-05T11:52:01Z``); a timestamp without an
  offset is taken as UTC;
- relative expressions: ``in 30 minutes``, ``in 5 mins``, ``in 2 hours``,
  ``in 1 hr``, ``in 3 days``;
- wall-clock expressions: ``today at 3pm``, ``tomorrow at 9:30am``,
  ``tomorrow at 14:30``, evaluated in the caller's timezone.

The result is always an aware UTC datetime that lies between now plus the
minimum lead time and the maximum horizon.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidInput, TooSoon

MIN_LEAD = timedelta(minutes=1)
MAX_HORIZON = timedelta(days=365)

_RELATIVE_RE = [
    (re.compile(r"^in\s+(\d+)\s+(?:minutes?|mins?)$"), timedelta(minutes=1)),
    (re.compile(r"^in\s+(\d+)\s+(?:hours?|hrs?)$"), timedelta(hours=1)),
    (re.compile(r"^in\s+(\d+)\s+days?$"), timedelta(days=1)),
]
_WALL_CLOCK_RE = re.compile(r"^(today|tomorrow)\s+at\s+(.+)$")
_AMPM_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)$")
_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_BEYOND_HORIZON = "Scheduled time cannot be more than 1 year in the future"


def _unparseable(expression: str) -> InvalidInput:
    return InvalidInput(
        f'Unable to parse date: "{expression}". Use ISO 8601 format or natural '
        f'language like "in 1 hour", "tomorrow at 9am"'
    )


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidInput(f"Unknown timezone: {name}") from exc


def parse_time_of_day(value: str) -> time | None:
    """Parse ``9am``, ``12:15pm`` or ``14:30``; None when not recognized."""
    value = value.strip().lower()
    match = _AMPM_RE.match(value)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        if match.group(3) == "pm" and hour != 12:
            hour += 12
        elif match.group(3) == "am" and hour == 12:
            hour = 0
        return time(hour, minute)
    match = _24H_RE.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour <= 23 and minute <= 59:
            return time(hour, minute)
    return None


def _parse_iso(expression: str) -> datetime | None:
    if not re.match(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}", expression):
        return None
    try:
        parsed = datetime.fromisoformat(expression.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        raise InvalidInput(_BEYOND_HORIZON) from exc


def _parse_natural(expression: str, now: datetime, zone: ZoneInfo) -> datetime | None:
    text = expression.strip().lower()
    for pattern, unit in _RELATIVE_RE:
        match = pattern.match(text)
        if match:
            try:
                return now + unit * int(match.group(1))
            except OverflowError as exc:
                raise InvalidInput(_BEYOND_HORIZON) from exc

    match = _WALL_CLOCK_RE.match(text)
    if not match:
        return None
    clock = parse_time_of_day(match.group(2))
    if clock is None:
        return None
    local_day = now.astimezone(zone).date()
    if match.group(1) == "tomorrow":
        local_day += timedelta(days=1)
    return datetime.combine(local_day, clock, tzinfo=zone).astimezone(timezone.utc)


def parse_schedule_time(
    expression: str | datetime,
    *,
    now: datetime | None = None,
    tz: str = "UTC",
    min_lead: timedelta = MIN_LEAD,
    max_horizon: timedelta = MAX_HORIZON,
) -> datetime:
    """Resolve a scheduled-send time to an aware UTC datetime.

    Args:
        expression: ISO 8601 string, natural-language expression, or a datetime.
        now: Reference time; defaults to the current UTC time.
        tz: IANA timezone for ``today at``/``tomorrow at`` expressions.
        min_lead: Minimum distance from ``now``.
        max_horizon: Maximum distance from ``now``.

    Raises:
        InvalidInput: The expression cannot be parsed, the timezone is
            unknown, or the time lies beyond the horizon.
        TooSoon: The time is earlier than ``now + min_lead``.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    zone = _zone(tz)

    if isinstance(expression, datetime):
        when = expression if expression.tzinfo else expression.replace(tzinfo=timezone.utc)
        when = when.astimezone(timezone.utc)
    else:
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidInput("scheduled_at is required")
        when = _parse_iso(expression.strip()) or _parse_natural(expression, now, zone)
        if when is None:
            raise _unparseable(expression)

    earliest = now + min_lead
    if when < earliest:
        minutes = max(1, int(min_lead.total_seconds() // 60))
        raise TooSoon(
            f"Scheduled time must be at least {minutes} minute(s) in the future",
            earliest=earliest,
        )
    if when > now + max_horizon:
        raise InvalidInput(_BEYOND_HORIZON)
    return when
