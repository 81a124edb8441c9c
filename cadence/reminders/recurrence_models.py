"""
Recurrence calculation and occurrence window expansion
"""
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from cadence.utils.timezone import get_zoneinfo, to_utc_aware, utc_now
from .schemas import EndCondition, EndConditionType, Frequency, RecurrenceRule


SATURDAY = 6
SUNDAY = 0


def sunday_index(day: date) -> int:
    """Weekday number with Sunday=0 ... Saturday=6"""
    return (day.weekday() + 1) % 7


def start_of_week(day: date) -> date:
    """Sunday that opens the week containing day"""
    return day - timedelta(days=sunday_index(day))


def _wall_clock(instant: datetime, zone: ZoneInfo) -> datetime:
    """Naive local wall-clock reading of an instant"""
    return to_utc_aware(instant).astimezone(zone).replace(tzinfo=None)


def _from_wall_clock(local: datetime, zone: ZoneInfo) -> datetime:
    return to_utc_aware(local.replace(tzinfo=zone))


class RecurrenceCalculator:
    """Calculates next occurrence for recurrence rules"""

    @staticmethod
    def next_due(rule: RecurrenceRule, current_due: datetime) -> Optional[datetime]:
        """
        Next due instant after current_due, or None when the series has ended.

        Count-based end conditions are not evaluated here; callers track how
        many occurrences they have emitted.
        """
        current = to_utc_aware(current_due)
        end = rule.end_condition
        if end.type == EndConditionType.ON_DATE and current > end.until:
            return None

        zone = get_zoneinfo(rule.timezone)

        if rule.is_weekday_based:
            next_date = RecurrenceCalculator._next_weekday_slot(rule, current, zone)
        elif rule.frequency == Frequency.HOURLY:
            next_date = current + timedelta(hours=rule.interval)
        elif rule.frequency == Frequency.MONTHLY:
            local = _wall_clock(current, zone) + relativedelta(months=rule.interval)
            next_date = _from_wall_clock(local, zone)
        elif rule.frequency == Frequency.WEEKLY:
            local = _wall_clock(current, zone) + timedelta(weeks=rule.interval)
            next_date = _from_wall_clock(local, zone)
        else:
            # daily, and custom without weekdays
            local = _wall_clock(current, zone) + timedelta(days=rule.interval)
            next_date = _from_wall_clock(local, zone)

        if rule.skip_weekends and not rule.weekdays:
            next_date = RecurrenceCalculator._skip_weekend(next_date, zone)

        if end.type == EndConditionType.ON_DATE and next_date > end.until:
            return None
        return next_date

    @staticmethod
    def _next_weekday_slot(rule: RecurrenceRule, current: datetime, zone: ZoneInfo) -> datetime:
        """
        Two-phase search: the first allowed day later in the current week when the
        week is on-interval, otherwise the first allowed day of the next on-interval week.
        Weeks start on Sunday and are counted from the anchor's week.
        """
        current_local = _wall_clock(current, zone)
        anchor = rule.anchor_instant or current
        series_week = start_of_week(_wall_clock(anchor, zone).date())
        current_week = start_of_week(current_local.date())
        weeks_diff = (current_week - series_week).days // 7
        time_of_day: time = current_local.time()

        if weeks_diff % rule.interval == 0:
            for day in rule.weekdays:
                candidate_local = datetime.combine(current_week + timedelta(days=day), time_of_day)
                candidate = _from_wall_clock(candidate_local, zone)
                if candidate > current:
                    return candidate

        next_interval_idx = weeks_diff // rule.interval + 1
        next_valid_week = series_week + timedelta(weeks=next_interval_idx * rule.interval)
        first_local = datetime.combine(next_valid_week + timedelta(days=rule.weekdays[0]), time_of_day)
        return _from_wall_clock(first_local, zone)

    @staticmethod
    def _skip_weekend(instant: datetime, zone: ZoneInfo) -> datetime:
        local = _wall_clock(instant, zone)
        while sunday_index(local.date()) in (SATURDAY, SUNDAY):
            local += timedelta(days=1)
        return _from_wall_clock(local, zone)

    @staticmethod
    def expand(
        rule: RecurrenceRule,
        first_due: datetime,
        horizon_days: float = 30,
        max_count: int = 100,
        now: Optional[datetime] = None,
        start_index: int = 1,
    ) -> List[datetime]:
        """
        Materialize the occurrences following first_due up to now + horizon_days.

        start_index is the occurrence number of first_due inside its chain (1 for
        the head) so that after_count rules stop at the right place when expanding
        from the middle of a chain. Output is strictly increasing.
        """
        now = to_utc_aware(now) if now is not None else utc_now()
        if rule.anchor_instant is None and rule.is_weekday_based:
            # interval phase is counted from the first occurrence, not from each step
            rule = rule.model_copy(update={"anchor_instant": to_utc_aware(first_due)})
        window_end = now + timedelta(days=horizon_days)
        end = rule.end_condition
        count_limit = end.count if end.type == EndConditionType.AFTER_COUNT else None

        results: List[datetime] = []
        current = to_utc_aware(first_due)
        while len(results) < max_count:
            if count_limit is not None and start_index + len(results) >= count_limit:
                break
            nxt = RecurrenceCalculator.next_due(rule, current)
            if nxt is None or nxt > window_end or nxt <= current:
                break
            results.append(nxt)
            current = nxt
        return results


next_due = RecurrenceCalculator.next_due
expand_occurrences = RecurrenceCalculator.expand


def rule_is_exhausted(rule: RecurrenceRule, current_due: datetime, occurrence_index: int) -> bool:
    """True when no occurrence can follow current_due"""
    end = rule.end_condition
    if end.type == EndConditionType.AFTER_COUNT and occurrence_index >= end.count:
        return True
    return next_due(rule, current_due) is None


# Predefined rules for common use cases
class CommonPatterns:
    """Common recurrence rules"""

    @staticmethod
    def daily(timezone: str = "UTC") -> RecurrenceRule:
        return RecurrenceRule(frequency=Frequency.DAILY, interval=1, timezone=timezone)

    @staticmethod
    def weekdays(timezone: str = "UTC") -> RecurrenceRule:
        return RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=(1, 2, 3, 4, 5), timezone=timezone)

    @staticmethod
    def weekends(timezone: str = "UTC") -> RecurrenceRule:
        return RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=(0, 6), timezone=timezone)

    @staticmethod
    def biweekly(weekdays: Sequence[int], anchor: datetime, timezone: str = "UTC") -> RecurrenceRule:
        return RecurrenceRule(
            frequency=Frequency.WEEKLY,
            interval=2,
            weekdays=tuple(weekdays),
            anchor_instant=anchor,
            timezone=timezone,
        )

    @staticmethod
    def monthly(until: Optional[datetime] = None, timezone: str = "UTC") -> RecurrenceRule:
        end = EndCondition.on_date(until) if until else EndCondition.never()
        return RecurrenceRule(frequency=Frequency.MONTHLY, end_condition=end, timezone=timezone)
