"""
Calendar arithmetic for recurring templates.

Pure functions only: no store access, no clock reads except where a caller
passes `from_date`. Weekdays use 0 = Sunday ... 6 = Saturday.
"""

import calendar
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from ..schemas.ledger import DEFAULT_DAY_OF_WEEK, Frequency, RecurringTemplate

_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def weekday_index(d: date) -> int:
    """Weekday with Sunday as 0."""
    return d.isoweekday() % 7


def month_bounds(d: date) -> tuple[date, date]:
    """Return (first_day, last_day) of the month containing d."""
    return d.replace(day=1), d.replace(day=days_in_month(d.year, d.month))


def next_from(
    base: date,
    frequency: Frequency | str,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> date:
    """
    Compute the occurrence that follows `base`.

    Args:
        base: The current occurrence date.
        frequency: Template cadence.
        day_of_month: Target day for monthly/quarterly/yearly cadences,
            clamped to the length of the resulting month. Defaults to the
            day of `base`.
        day_of_week: Target weekday (0 = Sunday) for weekly/biweekly
            cadences. Defaults to Monday.

    Returns:
        The next occurrence date, always strictly after `base`.

    Raises:
        ValueError: Unknown frequency or weekday out of range.
    """
    frequency = Frequency(frequency)

    if frequency is Frequency.DAILY:
        return base + timedelta(days=1)

    if frequency in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        target = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        if not 0 <= target <= 6:
            raise ValueError(f"day_of_week must be 0-6, got {target}")

        candidate = base + timedelta(days=1)
        while weekday_index(candidate) != target:
            candidate += timedelta(days=1)

        # Fortnightly: a base already on the target weekday moves 14 days
        if frequency is Frequency.BIWEEKLY and (candidate - base).days <= 7:
            candidate += timedelta(weeks=1)
        return candidate

    shifted = base + relativedelta(months=_MONTH_STEPS[frequency])
    wanted_day = day_of_month if day_of_month else base.day
    wanted_day = max(1, wanted_day)
    return shifted.replace(day=min(wanted_day, days_in_month(shifted.year, shifted.month)))


def apply_end_date(candidate: date, end_date: Optional[date]) -> Optional[date]:
    """Return None when candidate falls strictly after end_date (template retires)."""
    if end_date is not None and candidate > end_date:
        return None
    return candidate


def anchor_day(template: RecurringTemplate) -> Optional[int]:
    """Day of month a monthly-style template aims for."""
    if template.day_of_month:
        return template.day_of_month
    anchor = template.start_date or template.next_occurrence
    return anchor.day if anchor else None


def pinned_day_of_month(template: RecurringTemplate) -> Optional[int]:
    """Anchor day to store on a monthly-style template before its first run.

    Once an occurrence has been clamped (31 -> 28) the stored next_occurrence
    no longer carries the intended day, so the anchor must be fixed while it
    still does. Returns None when nothing needs pinning.
    """
    if template.day_of_month or Frequency(template.frequency) not in _MONTH_STEPS:
        return None
    if template.last_processed_date is not None:
        return None
    return anchor_day(template)


def advance(template: RecurringTemplate, current: date) -> Optional[date]:
    """Next occurrence after `current` for this template, or None once past end_date."""
    return apply_end_date(
        next_from(current, template.frequency, anchor_day(template), template.day_of_week),
        template.end_date,
    )


def calculate_next_occurrence(
    template: RecurringTemplate,
    from_date: date,
) -> Optional[date]:
    """
    Compute the first occurrence on or after `from_date`.

    Used when a template is created or re-activated. Without a processed
    occurrence the start date is the first occurrence; otherwise the
    schedule continues after the last processed date. Returns None when the
    template has already ended.
    """
    start = template.start_date or from_date
    end = template.end_date

    if end is not None and end < from_date:
        return None

    day = anchor_day(template)
    last = template.last_processed_date
    if last is not None and last >= start:
        candidate = next_from(last, template.frequency, day, template.day_of_week)
    else:
        candidate = start

    while candidate < from_date:
        candidate = next_from(candidate, template.frequency, day, template.day_of_week)

    return apply_end_date(candidate, end)


def upcoming_occurrences(
    template: RecurringTemplate,
    until: date,
    limit: int = 100,
) -> list[date]:
    """Forecast occurrences from the template's next_occurrence up to `until`."""
    dates: list[date] = []
    current = template.next_occurrence if template.is_active else None
    while current is not None and current <= until and len(dates) < limit:
        dates.append(current)
        current = advance(template, current)
    return dates


def is_due(template: RecurringTemplate, on_date: date) -> bool:
    """True if the template has an occurrence on or before `on_date`."""
    if not template.is_active or template.next_occurrence is None:
        return False
    return template.next_occurrence <= on_date
