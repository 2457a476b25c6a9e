"""Recurrence pattern parsing and next-occurrence date arithmetic.

Patterns are either a legacy literal (``daily``, ``weekly``, ``monthly``,
``yearly``, ``once``) or ``"{interval}_{unit}"`` with a positive integer
interval and ``unit`` one of ``days``, ``weeks``, ``months``, ``years``.
Anything else does not recur: the calculator hands the input back unchanged.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import StrEnum

ONCE = "once"


class RecurrenceUnit(StrEnum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


@dataclass(frozen=True)
class RecurrenceRule:
    interval: int
    unit: RecurrenceUnit

    def as_pattern(self) -> str:
        return f"{self.interval}_{self.unit}"


LEGACY_PATTERNS: dict[str, RecurrenceRule] = {
    "daily": RecurrenceRule(1, RecurrenceUnit.DAYS),
    "weekly": RecurrenceRule(1, RecurrenceUnit.WEEKS),
    "monthly": RecurrenceRule(1, RecurrenceUnit.MONTHS),
    "yearly": RecurrenceRule(1, RecurrenceUnit.YEARS),
}


def parse_pattern(pattern: str | None) -> RecurrenceRule | None:
    if not pattern or pattern == ONCE:
        return None
    legacy = LEGACY_PATTERNS.get(pattern)
    if legacy is not None:
        return legacy
    parts = pattern.split("_")
    if len(parts) != 2:
        return None
    raw_interval, raw_unit = parts
    if not (raw_interval.isascii() and raw_interval.isdigit()):
        return None
    interval = int(raw_interval)
    if interval <= 0:
        return None
    try:
        unit = RecurrenceUnit(raw_unit)
    except ValueError:
        return None
    return RecurrenceRule(interval, unit)


def is_recurring_pattern(pattern: str | None) -> bool:
    return parse_pattern(pattern) is not None


def is_valid_pattern(pattern: str | None) -> bool:
    return pattern == ONCE or is_recurring_pattern(pattern)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(current: datetime, months: int, *, anchor_day: int | None = None) -> datetime:
    month_index = current.month - 1 + months
    year = current.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or current.day, days_in_month(year, month))
    return current.replace(year=year, month=month, day=day)


def add_years(current: datetime, years: int, *, anchor_day: int | None = None) -> datetime:
    year = current.year + years
    day = min(anchor_day or current.day, days_in_month(year, current.month))
    return current.replace(year=year, day=day)


def next_occurrence(current: datetime, pattern: str | None, *, anchor_day: int | None = None) -> datetime:
    """Return the occurrence that follows ``current`` under ``pattern``.

    ``anchor_day`` is the day-of-month the series started on. Month and year
    steps clamp against it rather than against ``current.day`` so a series
    anchored on the 31st returns to the 31st after passing through shorter
    months. Non-recurring or unparseable patterns return ``current``.
    """
    rule = parse_pattern(pattern)
    if rule is None:
        return current
    if rule.unit == RecurrenceUnit.DAYS:
        return current + timedelta(days=rule.interval)
    if rule.unit == RecurrenceUnit.WEEKS:
        return current + timedelta(days=rule.interval * 7)
    if rule.unit == RecurrenceUnit.MONTHS:
        return add_months(current, rule.interval, anchor_day=anchor_day)
    return add_years(current, rule.interval, anchor_day=anchor_day)


def js_weekday(day: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (day.weekday() + 1) % 7


def matches_selection(
    day: date,
    *,
    week_days: list[int] | None = None,
    month_days: list[int] | None = None,
    year_dates: list[dict[str, int]] | None = None,
) -> bool:
    if week_days and js_weekday(day) not in week_days:
        return False
    last_day = days_in_month(day.year, day.month)
    if month_days and not any(min(selected, last_day) == day.day for selected in month_days):
        return False
    if year_dates and not any(
        int(item.get("month", 0)) == day.month and min(int(item.get("day", 0)), last_day) == day.day
        for item in year_dates
    ):
        return False
    return True


SELECTION_SEARCH_DAYS = 366 * 4


def snap_to_selection(
    start: date,
    *,
    week_days: list[int] | None = None,
    month_days: list[int] | None = None,
    year_dates: list[dict[str, int]] | None = None,
) -> date:
    """Earliest day on or after ``start`` accepted by every non-empty selection set."""
    if not (week_days or month_days or year_dates):
        return start
    for offset in range(SELECTION_SEARCH_DAYS):
        candidate = start + timedelta(days=offset)
        if matches_selection(
            candidate,
            week_days=week_days,
            month_days=month_days,
            year_dates=year_dates,
        ):
            return candidate
    return start
