"""Tests for wait arithmetic and business-hours adjustment."""

from datetime import datetime, time, timedelta, timezone

import pytest

from lead_workflows.core.timing import (
    apply_business_hours,
    next_time_of_day,
    parse_time_of_day,
    wait_duration,
)
from lead_workflows.schemas import WorkflowSettings

MONDAY_10 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("amount", "unit", "expected"),
    [
        (30, "minutes", timedelta(minutes=30)),
        (2, "hours", timedelta(hours=2)),
        (1.5, "days", timedelta(hours=36)),
        (5, "fortnights", timedelta(minutes=5)),
    ],
)
def test_wait_duration(amount, unit, expected):
    assert wait_duration(amount, unit) == expected


def test_parse_time_of_day():
    assert parse_time_of_day("09:30") == time(9, 30)
    assert parse_time_of_day("7:05") == time(7, 5)


def test_time_of_day_later_today():
    assert next_time_of_day(MONDAY_10, time(11, 0)) == datetime(
        2024, 3, 4, 11, 0, tzinfo=timezone.utc
    )


def test_time_of_day_already_passed_rolls_to_tomorrow():
    assert next_time_of_day(MONDAY_10, time(9, 0)) == datetime(
        2024, 3, 5, 9, 0, tzinfo=timezone.utc
    )


def test_time_of_day_equal_to_now_is_strictly_later():
    wake = next_time_of_day(MONDAY_10, time(10, 0))
    assert wake > MONDAY_10
    assert wake == MONDAY_10 + timedelta(days=1)


@pytest.mark.parametrize("hour", range(0, 24, 3))
def test_time_of_day_is_always_in_the_future(hour):
    now = MONDAY_10.replace(hour=hour, minute=17)
    for at in (time(0, 0), time(hour, 17), time(23, 59)):
        assert next_time_of_day(now, at) > now


def test_weekday_targets_next_matching_day():
    assert next_time_of_day(MONDAY_10, time(9, 0), weekday="friday") == datetime(
        2024, 3, 8, 9, 0, tzinfo=timezone.utc
    )
    # Same weekday but the time already passed: one week later.
    assert next_time_of_day(MONDAY_10, time(9, 0), weekday="monday") == datetime(
        2024, 3, 11, 9, 0, tzinfo=timezone.utc
    )


def test_time_of_day_uses_workflow_timezone():
    # 10:00 UTC is 05:00 in New York (EST, UTC-5) on this date.
    wake = next_time_of_day(MONDAY_10, time(9, 0), tz="America/New_York")
    assert wake == datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


# 2024-11-03: New York repeats 01:00-02:00, first as EDT (UTC-4) then as EST (UTC-5).
FALL_BACK = "America/New_York"


def _utc(*parts):
    return datetime(*parts, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        # 00:50 EDT: the first 01:20 is still ahead.
        (_utc(2024, 11, 3, 4, 50), _utc(2024, 11, 3, 5, 20)),
        # 01:10 EST, inside the repeated hour: only the second 01:20 is ahead.
        (_utc(2024, 11, 3, 6, 10), _utc(2024, 11, 3, 6, 20)),
        # 01:30 EST: both passed, tomorrow at 01:20 EST.
        (_utc(2024, 11, 3, 6, 30), _utc(2024, 11, 4, 6, 20)),
    ],
)
def test_time_of_day_across_fall_back(now, expected):
    wake = next_time_of_day(now, time(1, 20), tz=FALL_BACK)
    assert wake == expected
    assert wake > now


def test_weekday_time_inside_repeated_hour_is_in_the_future():
    # Sunday 01:10 EST; the Sunday 01:20 EST occurrence is still ahead.
    now = _utc(2024, 11, 3, 6, 10)
    wake = next_time_of_day(now, time(1, 20), weekday="sunday", tz=FALL_BACK)
    assert wake == datetime(2024, 11, 3, 6, 20, tzinfo=timezone.utc)


def _business(**overrides):
    return WorkflowSettings(
        business_hours_only=True,
        business_hours_start=9,
        business_hours_end=17,
        **overrides,
    )


def test_business_hours_disabled_is_identity():
    moment = datetime(2024, 3, 9, 3, 0, tzinfo=timezone.utc)
    assert apply_business_hours(moment, WorkflowSettings()) == moment


@pytest.mark.parametrize(
    ("moment", "expected"),
    [
        (datetime(2024, 3, 4, 7, 0), datetime(2024, 3, 4, 9, 0)),
        (datetime(2024, 3, 4, 12, 0), datetime(2024, 3, 4, 12, 0)),
        (datetime(2024, 3, 4, 18, 0), datetime(2024, 3, 5, 9, 0)),
    ],
)
def test_business_hours_window(moment, expected):
    result = apply_business_hours(moment.replace(tzinfo=timezone.utc), _business())
    assert result == expected.replace(tzinfo=timezone.utc)


def test_business_hours_skip_weekends():
    settings = _business(skip_weekends=True)
    saturday_noon = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)
    friday_evening = datetime(2024, 3, 8, 18, 0, tzinfo=timezone.utc)
    monday_9 = datetime(2024, 3, 11, 9, 0, tzinfo=timezone.utc)

    assert apply_business_hours(saturday_noon, settings) == monday_9
    assert apply_business_hours(friday_evening, settings) == monday_9


def test_business_hours_in_workflow_timezone():
    settings = _business(timezone="Europe/Berlin")
    # 06:00 UTC is 07:00 in Berlin (CET) and gets pushed to 09:00 Berlin time.
    moment = datetime(2024, 3, 4, 6, 0, tzinfo=timezone.utc)
    assert apply_business_hours(moment, settings) == datetime(
        2024, 3, 4, 8, 0, tzinfo=timezone.utc
    )
