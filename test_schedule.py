from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from core.schedule import (
    ScheduleSpec, js_weekday, next_run_time, parse_time_of_day, validate_schedule
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# 2024-01-01 was a Monday

def test_weekly_wednesday_to_monday():
    spec = ScheduleSpec(frequency="weekly", day_of_week=1, time_of_day="06:00")
    assert next_run_time(spec, utc(2024, 1, 3, 10, 0)) == utc(2024, 1, 8, 6, 0)


def test_weekly_same_day_before_and_after_time():
    spec = ScheduleSpec(frequency="weekly", day_of_week=1, time_of_day="06:00")
    assert next_run_time(spec, utc(2024, 1, 8, 5, 0)) == utc(2024, 1, 8, 6, 0)
    assert next_run_time(spec, utc(2024, 1, 8, 7, 0)) == utc(2024, 1, 15, 6, 0)


def test_weekly_result_is_strictly_after_now():
    spec = ScheduleSpec(frequency="weekly", day_of_week=1, time_of_day="06:00")
    assert next_run_time(spec, utc(2024, 1, 8, 6, 0)) == utc(2024, 1, 15, 6, 0)


def test_weekly_defaults_to_sunday():
    spec = ScheduleSpec(frequency="weekly")
    result = next_run_time(spec, utc(2024, 1, 3, 10, 0))
    assert result == utc(2024, 1, 7, 6, 0)
    assert js_weekday(result) == 0


def test_biweekly_without_last_run_behaves_like_weekly():
    spec = ScheduleSpec(frequency="biweekly", day_of_week=1)
    assert next_run_time(spec, utc(2024, 1, 3, 10, 0)) == utc(2024, 1, 8, 6, 0)


def test_biweekly_pushes_candidate_close_to_last_run():
    spec = ScheduleSpec(frequency="biweekly", day_of_week=1, last_run_at=utc(2024, 1, 1, 6, 0))
    result = next_run_time(spec, utc(2024, 1, 3, 10, 0))
    assert result == utc(2024, 1, 22, 6, 0)
    assert (result - spec.last_run_at).days >= 14


def test_biweekly_keeps_candidate_far_from_last_run():
    spec = ScheduleSpec(frequency="biweekly", day_of_week=1, last_run_at=utc(2023, 12, 20, 6, 0))
    assert next_run_time(spec, utc(2024, 1, 3, 10, 0)) == utc(2024, 1, 8, 6, 0)


SWEEP_NOWS = [
    utc(2024, 1, 3, 10, 0),     # Wednesday mid-morning
    utc(2024, 1, 7, 6, 0),      # Sunday exactly at the time of day
    utc(2024, 1, 8, 6, 0),      # Monday exactly at the time of day
    utc(2024, 2, 29, 23, 59),   # leap day, end of day
    utc(2024, 12, 31, 5, 59),   # year end, just before the time of day
]


@pytest.mark.parametrize("day_of_week", range(7))
@pytest.mark.parametrize("now", SWEEP_NOWS)
def test_weekly_lands_on_requested_weekday_within_a_week(day_of_week, now):
    spec = ScheduleSpec(frequency="weekly", day_of_week=day_of_week, time_of_day="06:00")
    result = next_run_time(spec, now)

    assert js_weekday(result) == day_of_week
    assert (result.hour, result.minute) == (6, 0)
    assert now < result <= now + timedelta(days=7)


@pytest.mark.parametrize("day_of_week", range(7))
@pytest.mark.parametrize("now", SWEEP_NOWS)
@pytest.mark.parametrize("days_since_last_run", [0, 1, 6, 13, 14, 20])
def test_biweekly_is_never_within_14_days_of_last_run(day_of_week, now, days_since_last_run):
    last_run_at = now - timedelta(days=days_since_last_run)
    spec = ScheduleSpec(frequency="biweekly", day_of_week=day_of_week, last_run_at=last_run_at)
    result = next_run_time(spec, now)

    assert js_weekday(result) == day_of_week
    assert result > now
    assert result - last_run_at >= timedelta(days=14)


def test_monthly_clamps_to_end_of_february():
    spec = ScheduleSpec(frequency="monthly", day_of_month=31)
    assert next_run_time(spec, utc(2024, 2, 10)) == utc(2024, 2, 29, 6, 0)
    assert next_run_time(spec, utc(2023, 2, 10)) == utc(2023, 2, 28, 6, 0)


def test_monthly_rolls_to_next_month_and_clamps():
    spec = ScheduleSpec(frequency="monthly", day_of_month=31)
    assert next_run_time(spec, utc(2024, 1, 31, 7, 0)) == utc(2024, 2, 29, 6, 0)


def test_monthly_rolls_over_year_end():
    spec = ScheduleSpec(frequency="monthly", day_of_month=15, time_of_day="09:30")
    assert next_run_time(spec, utc(2024, 12, 20)) == utc(2025, 1, 15, 9, 30)


def test_naive_now_is_read_as_utc():
    spec = ScheduleSpec(frequency="weekly", day_of_week=1)
    assert next_run_time(spec, datetime(2024, 1, 3, 10, 0)) == utc(2024, 1, 8, 6, 0)


def test_accepts_any_object_with_cadence_fields():
    row = SimpleNamespace(frequency="monthly", day_of_week=None, day_of_month=None,
                          time_of_day=None, last_run_at=None)
    assert next_run_time(row, utc(2024, 3, 5)) == utc(2024, 4, 1, 6, 0)


def test_unknown_frequency():
    with pytest.raises(ValueError):
        next_run_time(ScheduleSpec(frequency="daily"), utc(2024, 1, 1))


@pytest.mark.parametrize("value,expected", [
    ("06:00", (6, 0)),
    ("9", (9, 0)),
    ("23:59", (23, 59)),
    (None, (6, 0)),
    ("", (6, 0)),
])
def test_parse_time_of_day(value, expected):
    assert parse_time_of_day(value) == expected


@pytest.mark.parametrize("value", ["25:00", "12:60", "noon", "6-30"])
def test_parse_time_of_day_rejects_malformed(value):
    with pytest.raises(ValueError):
        parse_time_of_day(value)


def test_validate_schedule():
    validate_schedule("weekly", day_of_week=6, time_of_day="07:15")
    with pytest.raises(ValueError):
        validate_schedule("hourly")
    with pytest.raises(ValueError):
        validate_schedule("weekly", day_of_week=7)
    with pytest.raises(ValueError):
        validate_schedule("monthly", day_of_month=0)
    with pytest.raises(ValueError):
        validate_schedule("monthly", day_of_month=12, time_of_day="24:00")
