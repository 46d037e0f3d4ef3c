"""Interval calculator tests"""
import pytest
from datetime import datetime, timezone, timedelta

from redemption_engine.services.interval_service import (
    add_months, calculate_next_redemption, calculate_period_end
)


START = datetime(2024, 1, 15, 12, 30, tzinfo=timezone.utc)


@pytest.mark.high
class TestNextRedemption:
    """Test calculate_next_redemption()"""

    @pytest.mark.parametrize("interval_type,expected", [
        ("1min", START + timedelta(minutes=1)),
        ("5mins", START + timedelta(minutes=5)),
        ("daily", START + timedelta(days=1)),
        ("week", START + timedelta(days=7)),
        ("month", datetime(2024, 2, 15, 12, 30, tzinfo=timezone.utc)),
        ("year", datetime(2025, 1, 15, 12, 30, tzinfo=timezone.utc)),
    ])
    def test_known_intervals(self, interval_type, expected):
        assert calculate_next_redemption(interval_type, START) == expected

    @pytest.mark.parametrize("interval_type", ["fortnightly", "", None])
    def test_unknown_interval_falls_back_to_monthly(self, interval_type):
        assert calculate_next_redemption(interval_type, START) == datetime(2024, 2, 15, 12, 30, tzinfo=timezone.utc)

    def test_month_end_overflows_into_next_month(self):
        """Jan 31 + 1 month spills the missing February days into March"""
        jan_31 = datetime(2025, 1, 31, tzinfo=timezone.utc)
        assert calculate_next_redemption("month", jan_31) == datetime(2025, 3, 3, tzinfo=timezone.utc)

    def test_month_end_overflow_in_leap_year(self):
        jan_31 = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)
        assert calculate_next_redemption("month", jan_31) == datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_leap_day_plus_year(self):
        leap_day = datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert calculate_next_redemption("year", leap_day) == datetime(2025, 3, 1, tzinfo=timezone.utc)

    def test_day_that_exists_is_kept(self):
        mar_31 = datetime(2025, 3, 31, tzinfo=timezone.utc)
        assert add_months(mar_31, 2) == datetime(2025, 5, 31, tzinfo=timezone.utc)

    def test_december_rolls_over_year(self):
        december = datetime(2024, 12, 10, tzinfo=timezone.utc)
        assert add_months(december, 1) == datetime(2025, 1, 10, tzinfo=timezone.utc)

    def test_timezone_is_preserved(self):
        result = calculate_next_redemption("daily", START)
        assert result.tzinfo == timezone.utc


@pytest.mark.high
class TestPeriodEnd:
    """Test calculate_period_end()"""

    def test_five_minute_term(self):
        assert calculate_period_end(START, "5mins", 3) == START + timedelta(minutes=15)

    def test_weekly_term(self):
        assert calculate_period_end(START, "week", 4) == START + timedelta(days=28)

    def test_monthly_term_crosses_year(self):
        assert calculate_period_end(START, "month", 12) == datetime(2025, 1, 15, 12, 30, tzinfo=timezone.utc)

    def test_yearly_term(self):
        assert calculate_period_end(START, "year", 2) == datetime(2026, 1, 15, 12, 30, tzinfo=timezone.utc)

    def test_unknown_interval_uses_months(self):
        assert calculate_period_end(START, "quarterly", 3) == datetime(2024, 4, 15, 12, 30, tzinfo=timezone.utc)

    def test_zero_term_returns_start(self):
        assert calculate_period_end(START, "daily", 0) == START

    def test_leap_day_period_end_overflows(self):
        leap_day = datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert calculate_period_end(leap_day, "year", 1) == datetime(2025, 3, 1, tzinfo=timezone.utc)
