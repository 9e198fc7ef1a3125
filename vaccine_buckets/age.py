"""Age arithmetic for calendar windows.

Ages are measured in whole units with fixed day ratios (see ``AgeUnit.days``)
and always floored. Scheduled dates, on the other hand, advance the birth date
by calendar weeks, months or years, so a month-based window and its scheduled
date can disagree by a few days near the window edge.

Plain dates and naive datetimes are interpreted as UTC midnight / UTC time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from .data_models import DateLike
from .enums import AgeUnit

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Age:
    """Age expressed in each unit, floored."""

    days: int
    weeks: int
    months: int
    years: int

    def in_unit(self, unit: AgeUnit) -> int:
        return {
            AgeUnit.DAYS: self.days,
            AgeUnit.WEEKS: self.weeks,
            AgeUnit.MONTHS: self.months,
            AgeUnit.YEARS: self.years,
        }[unit]


def as_utc(value: DateLike) -> datetime:
    """Normalize a date or datetime to an aware UTC datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def age_in_days(birth_date: DateLike, as_of: Optional[DateLike] = None) -> int:
    """Return the number of whole days elapsed since ``birth_date``.

    Negative for birth dates after ``as_of``; no validation is performed.
    """
    now = as_utc(as_of) if as_of is not None else utc_now()
    elapsed = now - as_utc(birth_date)
    return math.floor(elapsed.total_seconds() / SECONDS_PER_DAY)


def compute_age(birth_date: DateLike, as_of: Optional[DateLike] = None) -> Age:
    """Compute a child's age in days, weeks, months and years.

    Parameters
    ----------
    birth_date : date | datetime
        Date of birth.
    as_of : date | datetime, optional
        Instant at which the age is measured. Defaults to now (UTC).

    Returns
    -------
    Age
        Each field is ``floor(age_in_days / unit_days)``.

    Examples
    --------
    >>> compute_age(date(2025, 1, 1), as_of=date(2025, 1, 22))
    Age(days=21, weeks=3, months=0, years=0)
    """
    days = age_in_days(birth_date, as_of)
    return Age(
        days=days,
        weeks=math.floor(days / AgeUnit.WEEKS.days),
        months=math.floor(days / AgeUnit.MONTHS.days),
        years=math.floor(days / AgeUnit.YEARS.days),
    )


def age_in_unit(
    birth_date: DateLike, unit: Any, as_of: Optional[DateLike] = None
) -> int:
    """Return the floored age in ``unit`` (unknown units count as days)."""
    return compute_age(birth_date, as_of).in_unit(AgeUnit.from_string(unit))


def unit_to_days(value: Any, unit: Any) -> Optional[float]:
    """Convert an age value expressed in ``unit`` to days.

    Returns None when ``value`` is missing or not numeric.
    """
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(numeric):
        return None
    return numeric * AgeUnit.from_string(unit).days


def _advance_calendar(base: datetime, step: relativedelta) -> datetime:
    # Step from the 1st, then add the day back so overflow rolls forward.
    return base.replace(day=1) + step + timedelta(days=base.day - 1)


def compute_scheduled_date(
    birth_date: DateLike,
    specific_age: Optional[float],
    max_age: Optional[float],
    unit: Any,
) -> datetime:
    """Compute the target date of a dose.

    The birth date is advanced by ``specific_age`` when set, otherwise by
    ``max_age``; with neither, the birth date itself is returned.

    Parameters
    ----------
    birth_date : date | datetime
        Date of birth.
    specific_age : float, optional
        Recommended age for the dose.
    max_age : float, optional
        Upper bound of the dose window.
    unit : AgeUnit | str
        Unit of both ages. WEEKS advance by 7-day steps, MONTHS and YEARS by
        calendar months/years (a day past the end of a shorter month rolls
        over into the next one, so Jan 31 + 1 month is Mar 3),
        anything else by raw days.

    Returns
    -------
    datetime
        Aware UTC datetime.
    """
    base = as_utc(birth_date)
    value = specific_age if specific_age is not None else max_age
    if value is None:
        return base

    age_unit = AgeUnit.from_string(unit)
    if age_unit is AgeUnit.WEEKS:
        return base + timedelta(days=int(value * AgeUnit.WEEKS.days))
    if age_unit is AgeUnit.MONTHS:
        return _advance_calendar(base, relativedelta(months=int(value)))
    if age_unit is AgeUnit.YEARS:
        return _advance_calendar(base, relativedelta(years=int(value)))
    return base + timedelta(days=int(value))
