"""Tests for due-date resolution."""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from inbox_actions.extraction import get_rules, resolve_due_date

# Monday 10:00 UTC
RECEIVED = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)
EN = get_rules("en")
FR = get_rules("fr")


def due(text: str, received: datetime = RECEIVED, rules=EN, **kwargs) -> datetime | None:
    return resolve_due_date(text, received, rules, **kwargs)


class TestEnglishExpressions:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("send it today", datetime(2024, 1, 15, 18, 0, tzinfo=UTC)),
            ("before noon please", datetime(2024, 1, 15, 12, 0, tzinfo=UTC)),
            ("this morning", datetime(2024, 1, 15, 12, 0, tzinfo=UTC)),
            ("this afternoon", datetime(2024, 1, 15, 18, 0, tzinfo=UTC)),
            ("by tonight", datetime(2024, 1, 15, 20, 0, tzinfo=UTC)),
            ("by end of day", datetime(2024, 1, 15, 18, 0, tzinfo=UTC)),
            ("by tomorrow", datetime(2024, 1, 16, 18, 0, tzinfo=UTC)),
            ("tomorrow morning", datetime(2024, 1, 16, 12, 0, tzinfo=UTC)),
            ("in 3 days", datetime(2024, 1, 18, 18, 0, tzinfo=UTC)),
            ("within 2 weeks", datetime(2024, 1, 29, 18, 0, tzinfo=UTC)),
            ("before Friday", datetime(2024, 1, 19, 18, 0, tzinfo=UTC)),
            ("by Wednesday", datetime(2024, 1, 17, 18, 0, tzinfo=UTC)),
            ("by the end of the week", datetime(2024, 1, 19, 18, 0, tzinfo=UTC)),
            ("sometime this week", datetime(2024, 1, 19, 18, 0, tzinfo=UTC)),
            ("next week", datetime(2024, 1, 22, 18, 0, tzinfo=UTC)),
            ("by the end of the month", datetime(2024, 1, 31, 18, 0, tzinfo=UTC)),
            ("by 2024-02-01", datetime(2024, 2, 1, 18, 0, tzinfo=UTC)),
            ("by March 3rd", datetime(2024, 3, 3, 18, 0, tzinfo=UTC)),
            ("by the 20th of January", datetime(2024, 1, 20, 18, 0, tzinfo=UTC)),
        ],
    )
    def test_expression(self, text, expected):
        assert due(text) == expected

    def test_weekday_is_strictly_after_received_day(self):
        assert due("on Monday") == datetime(2024, 1, 22, 18, 0, tzinfo=UTC)

    def test_month_date_on_received_day_is_not_rolled(self):
        assert due("by 15 January") == datetime(2024, 1, 15, 18, 0, tzinfo=UTC)

    def test_past_month_date_rolls_to_next_year(self):
        assert due("by 10 January") == datetime(2025, 1, 10, 18, 0, tzinfo=UTC)

    def test_default_hour_is_configurable(self):
        assert due("by tomorrow", default_hour=9) == datetime(2024, 1, 16, 9, 0, tzinfo=UTC)


class TestUnresolvable:
    def test_no_expression(self):
        assert due("Can you send me the report?") is None
        assert due("") is None

    def test_slash_dates_are_ambiguous(self):
        assert due("by 3/4") is None
        assert due("by 03/04/2024 or tomorrow") is None

    def test_impossible_date(self):
        assert due("by 31 February") is None

    def test_invoice_numbers_are_not_dates(self):
        assert due("ticket INV-2024-001") is None


class TestTimezones:
    def test_relative_dates_use_configured_timezone(self):
        paris = ZoneInfo("Europe/Paris")
        # 23:30 UTC is already Tuesday in Paris
        received = datetime(2024, 1, 15, 23, 30, tzinfo=UTC)

        result = due("by tomorrow", received=received, tz=paris)

        assert result == datetime(2024, 1, 17, 18, 0, tzinfo=paris)

    def test_naive_received_at_is_utc(self):
        assert due("today", received=datetime(2024, 1, 15, 10, 0)) == datetime(
            2024, 1, 15, 18, 0, tzinfo=UTC
        )


class TestFrenchExpressions:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("avant vendredi", datetime(2024, 1, 19, 18, 0, tzinfo=UTC)),
            ("d'ici demain", datetime(2024, 1, 16, 18, 0, tzinfo=UTC)),
            ("demain matin", datetime(2024, 1, 16, 12, 0, tzinfo=UTC)),
            ("dans 5 jours", datetime(2024, 1, 20, 18, 0, tzinfo=UTC)),
            ("avant le 1er février", datetime(2024, 2, 1, 18, 0, tzinfo=UTC)),
            ("en fin de journée", datetime(2024, 1, 15, 18, 0, tzinfo=UTC)),
            ("la semaine prochaine", datetime(2024, 1, 22, 18, 0, tzinfo=UTC)),
            ("fin du mois", datetime(2024, 1, 31, 18, 0, tzinfo=UTC)),
        ],
    )
    def test_expression(self, text, expected):
        assert due(text, rules=FR) == expected
