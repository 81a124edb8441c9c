"""Tests for recurrence calculation and occurrence window expansion."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from cadence.reminders.errors import InvalidRuleError
from cadence.reminders.recurrence_models import (
    CommonPatterns,
    RecurrenceCalculator,
    expand_occurrences,
    next_due,
    rule_is_exhausted,
    start_of_week,
    sunday_index,
)
from cadence.reminders.schemas import EndCondition, Frequency, RecurrenceRule, RoutineSchedule, RoutineStep

UTC = timezone.utc


def utc(*args):
    return datetime(*args, tzinfo=UTC)


def test_sunday_based_week_numbering():
    sunday = utc(2026, 10, 18).date()
    assert sunday_index(sunday) == 0
    assert sunday_index(sunday + timedelta(days=6)) == 6
    assert start_of_week(sunday + timedelta(days=3)) == sunday


@pytest.mark.parametrize(
    "current",
    [utc(2026, 1, 1, 9), utc(2026, 2, 27, 23, 30), utc(2026, 12, 31, 0, 5)],
)
def test_weekly_interval_one_adds_seven_days(current):
    rule = RecurrenceRule(frequency=Frequency.WEEKLY)
    assert next_due(rule, current) == current + timedelta(days=7)


def test_weekly_interval_without_weekdays_adds_interval_weeks():
    rule = RecurrenceRule(frequency=Frequency.WEEKLY, interval=2)
    assert next_due(rule, utc(2026, 10, 19, 9)) == utc(2026, 11, 2, 9)


def test_daily_and_hourly_intervals():
    daily = RecurrenceRule(frequency=Frequency.DAILY, interval=3)
    hourly = RecurrenceRule(frequency=Frequency.HOURLY, interval=5)
    assert next_due(daily, utc(2026, 10, 19, 9)) == utc(2026, 10, 22, 9)
    assert next_due(hourly, utc(2026, 10, 19, 22)) == utc(2026, 10, 20, 3)


def test_custom_without_weekdays_behaves_as_daily():
    rule = RecurrenceRule(frequency=Frequency.CUSTOM, interval=2)
    assert next_due(rule, utc(2026, 10, 19, 9)) == utc(2026, 10, 21, 9)


def test_monthly_clamps_to_month_end():
    rule = RecurrenceRule(frequency=Frequency.MONTHLY)
    assert next_due(rule, utc(2027, 1, 31, 9)) == utc(2027, 2, 28, 9)
    assert next_due(rule, utc(2028, 1, 31, 9)) == utc(2028, 2, 29, 9)


def test_daily_keeps_wall_clock_across_dst():
    rule = RecurrenceRule(frequency=Frequency.DAILY, timezone="America/New_York")
    # 09:00 EST on the day before the spring-forward change
    assert next_due(rule, utc(2026, 3, 7, 14)) == utc(2026, 3, 8, 13)


def test_hourly_is_absolute_across_dst():
    rule = RecurrenceRule(frequency=Frequency.HOURLY, timezone="America/New_York")
    assert next_due(rule, utc(2026, 3, 8, 6, 30)) == utc(2026, 3, 8, 7, 30)


def test_weekdays_in_same_week():
    rule = RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=[1, 3, 5])
    # Monday -> Wednesday
    assert next_due(rule, utc(2026, 10, 19, 9)) == utc(2026, 10, 21, 9)


def test_weekdays_roll_into_next_week():
    rule = RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=[1, 3, 5])
    # Friday -> following Monday
    assert next_due(rule, utc(2026, 10, 23, 9)) == utc(2026, 10, 26, 9)


def test_weekdays_force_weekly_semantics_for_daily_frequency():
    rule = RecurrenceRule(frequency=Frequency.DAILY, weekdays=[2])
    assert rule.is_weekday_based
    assert next_due(rule, utc(2026, 10, 20, 9)) == utc(2026, 10, 27, 9)


def test_biweekly_skips_the_off_week_entirely():
    anchor = utc(2026, 10, 19, 9)
    rule = CommonPatterns.biweekly([1, 3, 5], anchor)
    occurrences = expand_occurrences(rule, anchor, horizon_days=28, now=anchor)
    assert occurrences == [
        utc(2026, 10, 21, 9),
        utc(2026, 10, 23, 9),
        utc(2026, 11, 2, 9),
        utc(2026, 11, 4, 9),
        utc(2026, 11, 6, 9),
        utc(2026, 11, 16, 9),
    ]
    off_week = (utc(2026, 10, 25), utc(2026, 11, 1))
    assert not [o for o in occurrences if off_week[0] <= o < off_week[1]]


def test_weekday_search_from_off_week_jumps_to_next_valid_week():
    rule = RecurrenceRule(frequency=Frequency.WEEKLY, interval=2, weekdays=[3], anchor_instant=utc(2026, 10, 19, 9))
    # Tuesday of the off week
    assert next_due(rule, utc(2026, 10, 27, 9)) == utc(2026, 11, 4, 9)


def test_skip_weekends_pushes_to_monday():
    rule = RecurrenceRule(frequency=Frequency.DAILY, skip_weekends=True)
    assert next_due(rule, utc(2026, 10, 23, 9)) == utc(2026, 10, 26, 9)


def test_skip_weekends_ignored_with_weekdays():
    rule = RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=[6], skip_weekends=True)
    assert next_due(rule, utc(2026, 10, 19, 9)) == utc(2026, 10, 24, 9)


def test_on_date_end_condition_stops_series():
    rule = RecurrenceRule(end_condition=EndCondition.on_date(utc(2026, 10, 20)))
    assert next_due(rule, utc(2026, 10, 21, 9)) is None
    # the computed next instant would pass the bound
    assert next_due(rule, utc(2026, 10, 19, 9)) is None


def test_expand_daily_scenario():
    rule = RecurrenceRule(frequency=Frequency.DAILY)
    first = datetime(2025, 1, 1, 9, tzinfo=UTC)
    assert expand_occurrences(rule, first, horizon_days=3, now=first) == [
        datetime(2025, 1, 2, 9, tzinfo=UTC),
        datetime(2025, 1, 3, 9, tzinfo=UTC),
        datetime(2025, 1, 4, 9, tzinfo=UTC),
    ]


def test_expand_respects_horizon_and_is_increasing():
    now = utc(2026, 10, 19, 12)
    for rule in (
        RecurrenceRule(frequency=Frequency.HOURLY, interval=7),
        RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=[0, 2, 4], interval=3),
        CommonPatterns.monthly(),
    ):
        occurrences = RecurrenceCalculator.expand(rule, now, horizon_days=45, now=now)
        assert occurrences
        assert all(o <= now + timedelta(days=45) for o in occurrences)
        assert all(a < b for a, b in zip(occurrences, occurrences[1:]))


def test_expand_caps_at_max_count():
    rule = RecurrenceRule(frequency=Frequency.HOURLY)
    now = utc(2026, 10, 19, 12)
    assert len(expand_occurrences(rule, now, horizon_days=30, max_count=10, now=now)) == 10


def test_expand_stops_at_after_count():
    rule = RecurrenceRule(end_condition=EndCondition.after_count(3))
    first = utc(2026, 10, 19, 9)
    # the first occurrence counts as one
    assert len(expand_occurrences(rule, first, now=first)) == 2
    assert len(expand_occurrences(rule, first, now=first, start_index=2)) == 1
    assert expand_occurrences(rule, first, now=first, start_index=3) == []


def test_expand_exhausted_rule_returns_empty():
    rule = RecurrenceRule(end_condition=EndCondition.on_date(utc(2026, 1, 1)))
    first = utc(2026, 10, 19, 9)
    assert expand_occurrences(rule, first, now=first) == []


def test_rule_is_exhausted():
    count_rule = RecurrenceRule(end_condition=EndCondition.after_count(2))
    assert rule_is_exhausted(count_rule, utc(2026, 10, 19, 9), 2)
    assert not rule_is_exhausted(count_rule, utc(2026, 10, 19, 9), 1)
    assert not rule_is_exhausted(RecurrenceRule(), utc(2026, 10, 19, 9), 50)


def _rule_error(exc_info):
    [error] = exc_info.value.errors()
    return error["ctx"]["error"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"interval": 0},
        {"weekdays": [7]},
        {"weekdays": [-1]},
        {"timezone": "Mars/Olympus_Mons"},
        {"end_condition": {"type": "on_date"}},
        {"end_condition": {"type": "after_count", "count": 0}},
    ],
)
def test_invalid_rules_are_rejected(kwargs):
    with pytest.raises(ValidationError) as exc_info:
        RecurrenceRule(**kwargs)
    assert isinstance(_rule_error(exc_info), InvalidRuleError)


@pytest.mark.parametrize("kwargs", [{"days": [7]}, {"interval": 0}])
def test_invalid_routine_schedules_are_rejected(kwargs):
    with pytest.raises(ValidationError) as exc_info:
        RoutineSchedule(**kwargs)
    assert isinstance(_rule_error(exc_info), InvalidRuleError)


def test_routine_step_time_must_be_hh_mm():
    with pytest.raises(ValidationError) as exc_info:
        RoutineStep(time="25:00")
    assert isinstance(_rule_error(exc_info), InvalidRuleError)
    assert RoutineStep(time="7:05").time == "07:05"


def test_weekdays_are_sorted_and_deduplicated():
    assert RecurrenceRule(weekdays=[5, 1, 5, 3]).weekdays == (1, 3, 5)
