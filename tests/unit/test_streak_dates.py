"""Streak date boundaries: calendar days in UTC."""

from datetime import date, datetime, timedelta, timezone

from ead.gamification.streaks import activity_date, calendar_gap


class TestActivityDate:
    def test_midnight_utc_is_new_day(self):
        assert activity_date(datetime(2026, 3, 2, 0, 0, 0, tzinfo=timezone.utc)) == date(2026, 3, 2)

    def test_last_second_is_same_day(self):
        assert activity_date(datetime(2026, 3, 1, 23, 59, 59, tzinfo=timezone.utc)) == date(2026, 3, 1)

    def test_offset_converted_to_utc(self):
        # 22:30 in Sao Paulo (UTC-3) is already the next UTC day
        sao_paulo = timezone(timedelta(hours=-3))
        assert activity_date(datetime(2026, 3, 1, 22, 30, tzinfo=sao_paulo)) == date(2026, 3, 2)

    def test_naive_taken_as_utc(self):
        assert activity_date(datetime(2026, 3, 1, 23, 0)) == date(2026, 3, 1)


class TestCalendarGap:
    def test_consecutive_days(self):
        assert calendar_gap(date(2026, 2, 28), date(2026, 3, 1)) == 1

    def test_same_day(self):
        assert calendar_gap(date(2026, 3, 1), date(2026, 3, 1)) == 0

    def test_leap_day(self):
        assert calendar_gap(date(2028, 2, 28), date(2028, 2, 29)) == 1

    def test_year_boundary(self):
        assert calendar_gap(date(2025, 12, 31), date(2026, 1, 1)) == 1

    def test_backwards_is_negative(self):
        assert calendar_gap(date(2026, 3, 5), date(2026, 3, 1)) == -4
