"""
Period and next-run calculators for task templates.

Pure functions, no database access:
- compute_period_info: cycle spec + anchor -> period boundaries, due time, period key
- compute_next_run_at: cycle spec + now -> next firing time (or None)
- is_dispatch_due: frequency fields of a collection point / rule -> due right now?

All calendar arithmetic is done on local dates in the current Django time
zone and every returned datetime is timezone-aware. Inputs are clamped
rather than rejected, so none of these functions raise on bad field values.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from django.utils import timezone

MINUTES_IN_DAY = 24 * 60

# Cycle type values (mirrors models.CycleType, which imports this module)
DAILY = 'DAILY'
WEEKLY = 'WEEKLY'
MONTHLY = 'MONTHLY'
ONE_TIME = 'ONE_TIME'


@dataclass(frozen=True)
class CycleSpec:
    """Recurrence fields of a template."""

    cycle_type: str = ONE_TIME
    run_at_minute: int | None = None
    due_at_minute: int | None = None
    run_day_of_week: int | None = None
    due_day_of_week: int | None = None
    run_day_of_month: int | None = None
    due_day_of_month: int | None = None
    deadline_offset: int | None = None
    active_from: datetime | None = None
    active_until: datetime | None = None


@dataclass(frozen=True)
class PeriodInfo:
    period_start: datetime
    period_end: datetime
    due_at: datetime
    period_key: str
    run_at_minute: int


def clamp_minute(value, fallback=0):
    """Normalize a minute-of-day into [0, 1439]; None/garbage -> fallback."""
    if value is None:
        return fallback
    try:
        value = int(value)
    except (TypeError, ValueError):
        return fallback
    return min(max(0, value), MINUTES_IN_DAY - 1)


def _clamp_int(value, low, high, fallback):
    if value is None:
        return fallback
    try:
        value = int(value)
    except (TypeError, ValueError):
        return fallback
    return min(max(low, value), high)


def _local(value):
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return timezone.localtime(value)


def _at_minute(day, minute):
    minute = clamp_minute(minute)
    return timezone.make_aware(datetime.combine(day, time(minute // 60, minute % 60)))


def _start_of_day(day):
    return timezone.make_aware(datetime.combine(day, time.min))


def _end_of_day(day):
    return timezone.make_aware(datetime.combine(day, time.max))


def _monday_of(day):
    return day - timedelta(days=day.isoweekday() - 1)


def _last_day_of_month(year, month):
    return calendar.monthrange(year, month)[1]


def _clamp_month_day(year, month, day_of_month):
    """0, absent or past-the-end day numbers mean the month's last day."""
    last_day = _last_day_of_month(year, month)
    try:
        day_of_month = int(day_of_month or 0)
    except (TypeError, ValueError):
        day_of_month = 0
    if day_of_month <= 0 or day_of_month > last_day:
        return last_day
    return day_of_month


def _next_month(year, month):
    return (year + 1, 1) if month == 12 else (year, month + 1)


# =============================================================================
# Period keys
# =============================================================================

def format_day_key(day):
    return day.strftime('%Y-%m-%d')


def format_week_key(day):
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def format_month_key(day):
    return day.strftime('%Y-%m')


def parse_period_key(period_key):
    """
    Return the first local date of the period a key names.

    Accepts 'YYYY-MM-DD', 'YYYY-Www' (ISO week) and 'YYYY-MM'.
    Raises ValueError for anything else.
    """
    if '-W' in period_key:
        year, week = period_key.split('-W')
        return date.fromisocalendar(int(year), int(week), 1)
    parts = period_key.split('-')
    if len(parts) == 3:
        return date.fromisoformat(period_key)
    if len(parts) == 2:
        return date(int(parts[0]), int(parts[1]), 1)
    raise ValueError(f"Unrecognised period key: {period_key!r}")


# =============================================================================
# Period Calculator
# =============================================================================

def compute_period_info(spec, anchor, override_due_at=None):
    """
    Compute the period an anchor instant falls into.

    - DAILY: the anchor day; due at due_at_minute
    - WEEKLY: Monday..Sunday; due on due_day_of_week (default Sunday)
    - MONTHLY: calendar month; due on due_day_of_month (0/past-the-end = last day)
    - ONE_TIME (and unknown types): the anchor day; due deadline_offset hours
      after the anchor when set, otherwise at due_at_minute

    An explicit override_due_at replaces the computed due time.
    """
    run_at_minute = clamp_minute(spec.run_at_minute, 0)
    due_at_minute = clamp_minute(spec.due_at_minute, run_at_minute)
    local_anchor = _local(anchor)
    day = local_anchor.date()

    if spec.cycle_type == DAILY:
        period_start = _start_of_day(day)
        period_end = _end_of_day(day)
        due_at = _at_minute(day, due_at_minute)
        period_key = format_day_key(day)
    elif spec.cycle_type == WEEKLY:
        monday = _monday_of(day)
        due_day_of_week = _clamp_int(spec.due_day_of_week, 1, 7, 7)
        period_start = _start_of_day(monday)
        period_end = _end_of_day(monday + timedelta(days=6))
        due_at = _at_minute(monday + timedelta(days=due_day_of_week - 1), due_at_minute)
        period_key = format_week_key(monday)
    elif spec.cycle_type == MONTHLY:
        first = day.replace(day=1)
        last = first.replace(day=_last_day_of_month(first.year, first.month))
        due_day = _clamp_month_day(first.year, first.month, spec.due_day_of_month)
        period_start = _start_of_day(first)
        period_end = _end_of_day(last)
        due_at = _at_minute(first.replace(day=due_day), due_at_minute)
        period_key = format_month_key(first)
    else:
        period_start = _start_of_day(day)
        period_end = _end_of_day(day)
        if spec.deadline_offset:
            due_at = local_anchor + timedelta(hours=int(spec.deadline_offset))
        else:
            due_at = _at_minute(day, due_at_minute)
        period_key = format_day_key(day)

    if override_due_at is not None:
        due_at = override_due_at

    return PeriodInfo(
        period_start=period_start,
        period_end=period_end,
        due_at=due_at,
        period_key=period_key,
        run_at_minute=run_at_minute,
    )


# =============================================================================
# Next-Run Calculator
# =============================================================================

def compute_next_run_at(spec, now):
    """
    Return the next firing instant strictly after max(now, active_from),
    or None when the template has no further automatic runs.

    ONE_TIME templates fire once at active_from's day + run_at_minute and
    never without an active_from (they must be triggered manually).
    """
    base = _local(now)
    if spec.active_from is not None and base < spec.active_from:
        base = _local(spec.active_from)
    run_at_minute = clamp_minute(spec.run_at_minute, 0)
    day = base.date()

    if spec.cycle_type == DAILY:
        candidate = _at_minute(day, run_at_minute)
        if candidate <= base:
            candidate = _at_minute(day + timedelta(days=1), run_at_minute)
        return candidate

    if spec.cycle_type == WEEKLY:
        offset = timedelta(days=_clamp_int(spec.run_day_of_week, 1, 7, 1) - 1)
        monday = _monday_of(day)
        candidate = _at_minute(monday + offset, run_at_minute)
        if candidate <= base:
            # Recompute from next Monday so the weekday survives month/year ends
            candidate = _at_minute(monday + timedelta(days=7) + offset, run_at_minute)
        return candidate

    if spec.cycle_type == MONTHLY:
        run_day = 1 if spec.run_day_of_month is None else spec.run_day_of_month
        year, month = day.year, day.month
        candidate = _at_minute(
            date(year, month, _clamp_month_day(year, month, run_day)), run_at_minute
        )
        if candidate <= base:
            # Re-clamp against next month's own last day
            year, month = _next_month(year, month)
            candidate = _at_minute(
                date(year, month, _clamp_month_day(year, month, run_day)), run_at_minute
            )
        return candidate

    if spec.active_from is not None:
        candidate = _at_minute(_local(spec.active_from).date(), run_at_minute)
        if candidate <= base:
            return None
        return candidate

    return None


# =============================================================================
# Dispatch frequency (collection points and rules)
# =============================================================================

def _int_set(values, default):
    result = set()
    for value in values or []:
        try:
            result.add(int(value))
        except (TypeError, ValueError):
            continue
    return result or {default}


def is_dispatch_due(frequency_type, weekdays, month_days, dispatch_at_minute, now):
    """
    Whether something with the given dispatch frequency is due at `now`.

    WEEKLY matches ISO weekdays (default Monday), MONTHLY matches days of
    month (0 = last day, default the 1st); every other frequency is due daily.
    Nothing is due before the local minute of day reaches dispatch_at_minute.
    """
    local_now = _local(now)
    if local_now.hour * 60 + local_now.minute < clamp_minute(dispatch_at_minute, 0):
        return False

    today = local_now.date()
    if frequency_type == WEEKLY:
        return today.isoweekday() in _int_set(weekdays, 1)
    if frequency_type == MONTHLY:
        days = _int_set(month_days, 1)
        is_last_day = today.day == _last_day_of_month(today.year, today.month)
        return today.day in days or (0 in days and is_last_day)
    return True
