"""Calendar arithmetic for recurring schedules.

Slots are always derived from the previous slot, never from the time a tick
happened to run, so late ticks do not shift the cadence. Month based frequencies
re-anchor on `day_of_month` each time: a schedule on the 31st runs on Feb 28 and
then on Mar 31, not Mar 28.
"""

from __future__ import annotations

import calendar
from datetime import datetime, time, timedelta

from .models import RecurringSchedule

_MONTHS_PER_STEP = {"monthly": 1, "quarterly": 3, "annually": 12}


def _parse_time_of_day(schedule: RecurringSchedule) -> time:
    if schedule.time_of_day is None:
        return schedule.start_date.timetz().replace(microsecond=0)
    parts = [int(p) for p in schedule.time_of_day.split(":")]
    seconds = parts[2] if len(parts) == 3 else 0
    return time(parts[0], parts[1], seconds, tzinfo=schedule.start_date.tzinfo)


def _anchor_day(schedule: RecurringSchedule) -> int:
    return schedule.day_of_month or schedule.start_date.day


def add_months(value: datetime, months: int, anchor_day: int) -> datetime:
    years, month_index = divmod(value.month - 1 + months, 12)
    year = value.year + years
    month = month_index + 1
    day = min(anchor_day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def first_run_at(schedule: RecurringSchedule) -> datetime:
    """The first slot at or after `start_date`."""

    start = schedule.start_date
    at = _parse_time_of_day(schedule)
    candidate = datetime.combine(start.date(), at)

    if schedule.frequency == "daily":
        return candidate if candidate >= start else candidate + timedelta(days=1)

    if schedule.frequency == "weekly":
        weekday = start.weekday() if schedule.day_of_week is None else schedule.day_of_week
        candidate += timedelta(days=(weekday - start.weekday()) % 7)
        return candidate if candidate >= start else candidate + timedelta(days=7)

    anchor = _anchor_day(schedule)
    if schedule.frequency == "annually" and schedule.month_of_year is not None:
        candidate = add_months(
            candidate.replace(day=1), (schedule.month_of_year - start.month) % 12, anchor
        )
    else:
        candidate = add_months(candidate.replace(day=1), 0, anchor)
    step = _MONTHS_PER_STEP[schedule.frequency]
    while candidate < start:
        candidate = add_months(candidate, step, anchor)
    return candidate


def advance(schedule: RecurringSchedule, previous: datetime) -> datetime:
    """The slot `interval` periods after `previous`."""

    if schedule.frequency == "daily":
        return previous + timedelta(days=schedule.interval)
    if schedule.frequency == "weekly":
        return previous + timedelta(weeks=schedule.interval)
    months = _MONTHS_PER_STEP[schedule.frequency] * schedule.interval
    return add_months(previous, months, _anchor_day(schedule))


def next_after(
    schedule: RecurringSchedule, previous: datetime, now: datetime
) -> tuple[datetime, list[datetime]]:
    """First slot after `now`, counting from `previous`.

    Also returns the slots that fell between `previous` and `now`; those are
    skipped rather than replayed.
    """

    skipped: list[datetime] = []
    candidate = advance(schedule, previous)
    while candidate <= now:
        skipped.append(candidate)
        candidate = advance(schedule, candidate)
    return candidate, skipped
