"""Tests for recurrence calculation."""

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from src.models.enums import ScheduleType
from src.schemas.schedule import ScheduleSpec
from src.services.recurrence import describe_schedule, next_due, snooze_until

BERLIN = ZoneInfo("Europe/Berlin")


def spec(**kwargs) -> ScheduleSpec:
    return ScheduleSpec.model_validate(kwargs)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestDaily:
    """Tests for daily schedules."""

    def test_later_today(self):
        result = next_due(spec(type="daily", time_of_day="08:00"), "UTC", utc(2024, 1, 15, 7, 30))
        assert result == utc(2024, 1, 15, 8, 0)

    def test_time_passed_rolls_to_tomorrow(self):
        result = next_due(spec(type="daily", time_of_day="08:00"), "UTC", utc(2024, 1, 15, 8, 30))
        assert result == utc(2024, 1, 16, 8, 0)

    def test_exactly_at_due_time_is_not_due_again(self):
        """Results must be strictly after the reference."""
        result = next_due(spec(type="daily", time_of_day="08:00"), "UTC", utc(2024, 1, 15, 8, 0))
        assert result == utc(2024, 1, 16, 8, 0)

    def test_idempotent(self):
        schedule = spec(type="daily", time_of_day="08:00")
        reference = utc(2024, 1, 15, 8, 30)
        results = {next_due(schedule, "UTC", reference) for _ in range(5)}
        assert len(results) == 1

    def test_result_is_utc(self):
        result = next_due(spec(type="daily", time_of_day="09:00"), "Europe/Berlin", utc(2024, 1, 15, 6))
        assert result.tzinfo == UTC
        assert result == utc(2024, 1, 15, 8, 0)  # 09:00 CET

    def test_wall_clock_kept_across_dst(self):
        """09:00 Berlin is 08:00 UTC in winter and 07:00 UTC in summer."""
        schedule = spec(type="daily", time_of_day="09:00")
        before = next_due(schedule, "Europe/Berlin", utc(2024, 3, 30, 12))
        after = next_due(schedule, "Europe/Berlin", before)
        assert before == utc(2024, 3, 31, 7, 0)
        assert after == utc(2024, 4, 1, 7, 0)
        assert after.astimezone(BERLIN).time() == time(9, 0)

    def test_day_boundary_uses_reminder_timezone(self):
        """23:30 UTC on the 14th is already the 15th in Berlin."""
        result = next_due(
            spec(type="daily", time_of_day="07:00"), "Europe/Berlin", utc(2024, 1, 14, 23, 30)
        )
        assert result == utc(2024, 1, 15, 6, 0)


class TestWeekly:
    """Tests for weekly schedules."""

    def test_monday_and_wednesday_from_tuesday(self):
        # 2024-01-16 is a Tuesday
        schedule = spec(type="weekly", time_of_day="09:00", weekdays=[0, 2])
        assert next_due(schedule, "UTC", utc(2024, 1, 16, 10)) == utc(2024, 1, 17, 9)

    def test_wraps_to_next_week(self):
        # 2024-01-19 is a Friday
        schedule = spec(type="weekly", time_of_day="09:00", weekdays=["mon", "wed"])
        assert next_due(schedule, "UTC", utc(2024, 1, 19, 10)) == utc(2024, 1, 22, 9)

    def test_today_if_time_not_passed(self):
        schedule = spec(type="weekly", time_of_day="09:00", weekdays=["Monday"])
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 8)) == utc(2024, 1, 15, 9)

    def test_weekday_names_are_normalized(self):
        assert spec(type="weekly", weekdays=["wed", "Mon", 2]).weekdays == [0, 2]

    def test_requires_weekdays(self):
        with pytest.raises(ValidationError):
            spec(type="weekly")

    def test_rejects_unknown_weekday(self):
        with pytest.raises(ValidationError):
            spec(type="weekly", weekdays=["funday"])


class TestMonthly:
    """Tests for monthly schedules."""

    def test_day_31_clamps_in_february(self):
        schedule = spec(type="monthly", time_of_day="09:00", day_of_month=31)
        assert next_due(schedule, "UTC", utc(2024, 2, 1)) == utc(2024, 2, 29, 9)

    def test_day_31_clamps_in_non_leap_february(self):
        schedule = spec(type="monthly", time_of_day="09:00", day_of_month=31)
        assert next_due(schedule, "UTC", utc(2023, 2, 1)) == utc(2023, 2, 28, 9)

    def test_next_month_after_target_passed(self):
        schedule = spec(type="monthly", time_of_day="09:00", day_of_month=10)
        assert next_due(schedule, "UTC", utc(2024, 1, 15)) == utc(2024, 2, 10, 9)

    def test_december_rolls_into_january(self):
        schedule = spec(type="monthly", time_of_day="09:00", day_of_month=5)
        assert next_due(schedule, "UTC", utc(2024, 12, 20)) == utc(2025, 1, 5, 9)


class TestYearly:
    """Tests for yearly schedules."""

    def test_anchor_from_start_date(self):
        schedule = spec(type="yearly", time_of_day="10:00", start_date="2023-06-01")
        assert next_due(schedule, "UTC", utc(2024, 7, 1)) == utc(2025, 6, 1, 10)

    def test_leap_day_clamps(self):
        schedule = spec(type="yearly", time_of_day="10:00", start_date="2024-02-29")
        assert next_due(schedule, "UTC", utc(2024, 3, 1)) == utc(2025, 2, 28, 10)


class TestInterval:
    """Tests for interval schedules."""

    def test_from_prior_occurrence(self):
        schedule = spec(type="interval", time_of_day="09:00", interval=3)
        prior = utc(2024, 1, 15, 9)
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 9), prior) == utc(2024, 1, 18, 9)

    def test_prior_long_ago_skips_missed_steps(self):
        schedule = spec(type="interval", time_of_day="09:00", interval=2)
        prior = utc(2024, 1, 1, 9)
        assert next_due(schedule, "UTC", utc(2024, 1, 10, 12), prior) == utc(2024, 1, 11, 9)

    def test_without_prior_uses_today(self):
        schedule = spec(type="interval", time_of_day="09:00", interval=2)
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 8)) == utc(2024, 1, 15, 9)
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 10)) == utc(2024, 1, 17, 9)

    def test_requires_interval(self):
        with pytest.raises(ValidationError):
            spec(type="interval")


class TestOnceAndCustom:
    """Tests for one-time and custom schedules."""

    def test_once_in_future(self):
        schedule = spec(type="once", time_of_day="14:00", start_date="2024-01-20")
        assert next_due(schedule, "UTC", utc(2024, 1, 15)) == utc(2024, 1, 20, 14)

    def test_once_in_past(self):
        schedule = spec(type="once", time_of_day="14:00", start_date="2024-01-10")
        assert next_due(schedule, "UTC", utc(2024, 1, 15)) is None

    def test_once_without_start_date(self):
        assert next_due(spec(type="once"), "UTC", utc(2024, 1, 15)) is None

    def test_custom_never_computes(self):
        schedule = spec(type="custom", cron_expression="0 9 * * 1")
        assert next_due(schedule, "UTC", utc(2024, 1, 15)) is None


class TestBounds:
    """Tests for start/end dates, exclusions and occurrence limits."""

    def test_max_occurrences_reached(self):
        schedule = spec(type="daily", max_occurrences=3)
        assert next_due(schedule, "UTC", utc(2024, 1, 15), occurrence_count=3) is None
        assert next_due(schedule, "UTC", utc(2024, 1, 15), occurrence_count=2) is not None

    def test_waits_for_start_date(self):
        schedule = spec(type="daily", time_of_day="09:00", start_date="2024-02-01")
        assert next_due(schedule, "UTC", utc(2024, 1, 15)) == utc(2024, 2, 1, 9)

    def test_after_end_date(self):
        schedule = spec(type="daily", time_of_day="09:00", end_date="2024-01-15")
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 10)) is None

    def test_skips_excluded_dates(self):
        schedule = spec(
            type="daily",
            time_of_day="09:00",
            excluded_dates=[date(2024, 1, 16), date(2024, 1, 17)],
        )
        assert next_due(schedule, "UTC", utc(2024, 1, 15, 10)) == utc(2024, 1, 18, 9)

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            spec(type="daily", start_date="2024-02-01", end_date="2024-01-01")


class TestHelpers:
    """Tests for snooze and schedule descriptions."""

    def test_snooze_until(self):
        assert snooze_until(utc(2024, 1, 15, 9), 15) == utc(2024, 1, 15, 9, 15)

    def test_describe_weekly(self):
        schedule = spec(type="weekly", time_of_day="09:00", weekdays=[0, 2])
        assert describe_schedule(schedule) == "Weekly on Mon, Wed at 09:00"

    def test_describe_interval(self):
        assert describe_schedule(spec(type="interval", interval=1)) == "Every day at 09:00"
        assert describe_schedule(spec(type="interval", interval=3)) == "Every 3 days at 09:00"

    def test_schedule_type_enum(self):
        assert spec(type="daily").type == ScheduleType.DAILY
