"""Due-date resolution for extracted actions.

Deadlines are resolved against the time the message was received, in the
configured timezone. Anything that can't be read with confidence resolves to
None; this module never raises on mail content.
"""

import calendar
from datetime import UTC, date, datetime, timedelta, tzinfo

import regex

from inbox_actions.core.logging import get_logger
from inbox_actions.core.text import safe_search
from inbox_actions.extraction.rules import RuleSet

logger = get_logger(__name__)

DEFAULT_DUE_HOUR = 18
NOON_HOUR = 12
EVENING_HOUR = 20

FRIDAY = 4


def _at(day: date, hour: int, tz: tzinfo | None) -> datetime:
    return datetime(day.year, day.month, day.day, hour, 0, 0, tzinfo=tz)


def _last_day_of_month(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def _dated(anchor: date, year: int, month: int, day: int) -> date:
    """Build a month/day date, rolling to next year if it already passed."""
    candidate = date(year, month, day)
    if candidate < anchor:
        candidate = date(year + 1, month, day)
    return candidate


def _resolve(
    kind: str,
    match: regex.Match,
    anchor: datetime,
    rules: RuleSet,
    default_hour: int,
) -> datetime | None:
    today = anchor.date()
    tz = anchor.tzinfo

    if kind == "ambiguous":
        return None
    if kind == "iso":
        year, month, day = (int(g) for g in match.groups())
        return _at(date(year, month, day), default_hour, tz)
    if kind == "day_month":
        month = rules.month_names[match.group(2).lower()]
        return _at(_dated(today, today.year, month, int(match.group(1))), default_hour, tz)
    if kind == "month_day":
        month = rules.month_names[match.group(1).lower()]
        return _at(_dated(today, today.year, month, int(match.group(2))), default_hour, tz)
    if kind in ("before_noon", "this_morning"):
        return _at(today, NOON_HOUR, tz)
    if kind in ("this_afternoon", "end_of_day", "today"):
        return _at(today, default_hour, tz)
    if kind == "this_evening":
        return _at(today, EVENING_HOUR, tz)
    if kind == "tomorrow_morning":
        return _at(today + timedelta(days=1), NOON_HOUR, tz)
    if kind == "tomorrow":
        return _at(today + timedelta(days=1), default_hour, tz)
    if kind == "days":
        return _at(today + timedelta(days=int(match.group(1))), default_hour, tz)
    if kind == "weeks":
        return _at(today + timedelta(weeks=int(match.group(1))), default_hour, tz)
    if kind == "weekday":
        target = rules.weekday_names[match.group(1).lower()]
        # Strictly after the received day: "on Monday" sent on a Monday is next week
        days_ahead = (target - today.weekday()) % 7 or 7
        return _at(today + timedelta(days=days_ahead), default_hour, tz)
    if kind in ("this_week", "end_of_week"):
        days_to_friday = (FRIDAY - today.weekday()) % 7
        return _at(today + timedelta(days=days_to_friday), default_hour, tz)
    if kind == "next_week":
        return _at(today + timedelta(days=7 - today.weekday()), default_hour, tz)
    if kind in ("this_month", "end_of_month"):
        return _at(_last_day_of_month(today), default_hour, tz)

    logger.warning("Unknown due date kind", kind=kind)
    return None


def resolve_due_date(
    text: str,
    received_at: datetime,
    rules: RuleSet,
    default_hour: int = DEFAULT_DUE_HOUR,
    tz: tzinfo | None = None,
) -> datetime | None:
    """Find and resolve the first deadline expression in text.

    Args:
        text: Sentence (or window of text) to search
        received_at: Anchor for relative expressions
        rules: Locale rule set providing patterns and month/weekday names
        default_hour: Hour used for date-only deadlines
        tz: Timezone the deadline is expressed in (defaults to received_at's)

    Returns:
        Timezone-aware deadline, or None when absent or not confidently parsable
    """
    if not text:
        return None

    anchor = received_at if received_at.tzinfo else received_at.replace(tzinfo=UTC)
    if tz is not None:
        anchor = anchor.astimezone(tz)

    for date_pattern in rules.date_patterns:
        match = safe_search(date_pattern.pattern, text)
        if match is None:
            continue
        try:
            return _resolve(date_pattern.kind, match, anchor, rules, default_hour)
        except (ValueError, OverflowError, KeyError) as e:
            # e.g. "31 February", a year out of range
            logger.debug("due_date_unparsable", kind=date_pattern.kind, error=str(e))
            return None

    return None
