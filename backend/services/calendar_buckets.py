"""Calendar bucketing for timelog analytics.

Groups timestamped records into day cells for the activity heatmap and into
fixed-length sprint windows for velocity reporting. All datetimes handled
here are naive local datetimes; timezone conversion happens before records
reach this module.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Optional
from dateutil.relativedelta import relativedelta

from services.time_units import format_duration, seconds_to_hours

DAYS_PER_WEEK = 7
DEFAULT_SPRINT_WEEKS = 1
HEATMAP_PADDING_MONTHS = 1
EMPTY_HEATMAP_MONTHS = 6

# Upper bounds (seconds) of heatmap intensity levels 1-3, level 4 is everything above
INTENSITY_THRESHOLDS = (3600, 7200, 14400)


def sunday_weekday(day: date) -> int:
    """Day of week with Sunday = 0 and Saturday = 6."""
    return (day.weekday() + 1) % DAYS_PER_WEEK


def start_of_week(day: date) -> date:
    """Sunday on or before the given day."""
    return day - timedelta(days=sunday_weekday(day))


def week_of_year(day: date) -> int:
    """Week number for Sunday-start weeks.

    Week 1 is the week containing January 1st, so the last days of December
    can belong to week 1 of the following year.
    """
    week_start = start_of_week(day)
    if week_start >= start_of_week(date(day.year + 1, 1, 1)):
        return 1
    first_week_start = start_of_week(date(day.year, 1, 1))
    return (week_start - first_week_start).days // DAYS_PER_WEEK + 1


def week_key(day: date) -> tuple:
    """Return (label, sunday) for the Sunday-start week holding a day.

    The label takes the ISO week number and the calendar year of the week's
    Sunday, so a Sunday in early January can read e.g. ``KW 53 2021``.
    """
    sunday = start_of_week(day)
    return f"KW {sunday.isocalendar()[1]:02d} {sunday.year}", sunday


def intensity_level(seconds: float) -> int:
    """Map a day's logged seconds to a 0-4 heatmap intensity."""
    if seconds <= 0:
        return 0
    for level, threshold in enumerate(INTENSITY_THRESHOLDS, start=1):
        if seconds < threshold:
            return level
    return len(INTENSITY_THRESHOLDS) + 1


def sum_by_day(records: list, spent_at: Callable, time_spent: Callable) -> dict:
    """Sum logged seconds per calendar date."""
    totals = {}
    for record in records:
        day = spent_at(record).date()
        totals[day] = totals.get(day, 0) + time_spent(record)
    return totals


def build_heatmap(day_totals: dict, today: Optional[date] = None) -> list:
    """Build a dense, Sunday-aligned calendar grid from per-day totals.

    The grid spans one month before the first active day to one month after
    the last one. Without any data it covers the six months ending today.

    Returns:
        List of weeks, each a list of exactly 7 day cells
    """
    if day_totals:
        first = min(day_totals) - relativedelta(months=HEATMAP_PADDING_MONTHS)
        last = max(day_totals) + relativedelta(months=HEATMAP_PADDING_MONTHS)
    else:
        last = today or date.today()
        first = last - relativedelta(months=EMPTY_HEATMAP_MONTHS)

    weeks = []
    current = start_of_week(first)
    while current <= last:
        week = []
        for _ in range(DAYS_PER_WEEK):
            seconds = day_totals.get(current, 0)
            week.append({
                "date": current.isoformat(),
                "timeSpent": seconds,
                "hours": seconds_to_hours(seconds),
                "duration": format_duration(seconds),
                "weekday": sunday_weekday(current),
                "week": week_of_year(current),
                "month": current.month,
                "year": current.year,
                "intensity": intensity_level(seconds)
            })
            current += timedelta(days=1)
        weeks.append(week)

    return weeks


def bucket_sprints(records: list, spent_at: Callable,
                   sprint_weeks: int = DEFAULT_SPRINT_WEEKS) -> list:
    """Slice records into consecutive fixed-length sprint windows.

    Windows start at midnight of the earliest record's date and are
    half-open ``[start, end)``. Only windows holding at least one record are
    returned, numbered 1..n in chronological order, so sprint numbers are
    not calendar aligned when there are gaps in the data.

    Returns:
        List of dicts with sprintNumber, start, end and records
    """
    if sprint_weeks < 1:
        raise ValueError(f"Sprint length must be at least one week, got {sprint_weeks}")
    if not records:
        return []

    first = min(spent_at(record) for record in records)
    origin = datetime.combine(first.date(), datetime.min.time())
    length = timedelta(weeks=sprint_weeks)

    windows = {}
    for record in records:
        index = (spent_at(record) - origin) // length
        windows.setdefault(index, []).append(record)

    sprints = []
    for number, index in enumerate(sorted(windows), start=1):
        start = origin + index * length
        sprints.append({
            "sprintNumber": number,
            "start": start,
            "end": start + length,
            "records": windows[index]
        })

    return sprints
