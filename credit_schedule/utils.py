"""Money and calendar helpers for the credit schedule engine.

This module provides helpers for parsing user input into ``Decimal`` and
``datetime.date`` values, rounding amounts to a currency's minor unit and
doing month arithmetic. Dates never carry a time of day, so comparisons are
plain calendar comparisons.
"""

from __future__ import annotations

import calendar
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, getcontext
from typing import Union

from .config import DECIMAL_PRECISION, minor_units_for

getcontext().prec = DECIMAL_PRECISION  # increase precision for financial calculations

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0")


def to_decimal(value: Number) -> Decimal:
    """Convert ``value`` into a ``Decimal``.

    Floats go through ``str`` so that ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion. Strings may contain thousands
    separators and surrounding whitespace.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid numeric value: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        cleaned = str(value).replace(",", "").replace(" ", "").strip()
        result = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Invalid numeric value: {value!r}")
    return result


def minor_unit(currency: str) -> Decimal:
    """Return the smallest amount representable in ``currency`` (e.g. 0.01)."""
    return Decimal(1).scaleb(-minor_units_for(currency))


def round_money(amount: Decimal, currency: str) -> Decimal:
    """Round ``amount`` half-up to the minor unit of ``currency``."""
    return amount.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def parse_iso_date(value: Union[str, date]) -> date:
    """Parse a ``YYYY-MM-DD`` string into a ``date``.

    A trailing time component (``2024-01-20T00:00:00Z``) is ignored; only the
    calendar date written in the string is used, never a converted one.

    Raises
    ------
    ValueError
        If the string is not a valid calendar date.
    """
    if isinstance(value, date):
        return value
    try:
        text = str(value).strip()[:10]
        return date.fromisoformat(text)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid ISO date: {value!r}") from exc


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(dt: date, months: int, day: int = None) -> date:
    """Return a date ``months`` months after ``dt``.

    The day of month is ``day`` when given, else ``dt.day``, clamped to the
    last valid day of the target month (day 31 in February yields the 28th
    or 29th).
    """
    year = dt.year + (dt.month - 1 + months) // 12
    month = (dt.month - 1 + months) % 12 + 1
    wanted = dt.day if day is None else day
    return date(year, month, min(wanted, last_day_of_month(year, month)))


def end_of_month(dt: date) -> date:
    return date(dt.year, dt.month, last_day_of_month(dt.year, dt.month))


def days_between(start: date, end: date) -> int:
    """Number of days from ``start`` up to, not including, ``end``."""
    return (end - start).days


def days_in_year(year: int) -> int:
    return 366 if calendar.isleap(year) else 365


def split_by_year(start: date, end: date):
    """Yield ``(days, days_in_year)`` chunks covering ``[start, end)``.

    Daily accrual uses the length of the calendar year each day falls in, so
    an interval spanning New Year is split at January 1st.
    """
    cursor = start
    while cursor < end:
        next_year = date(cursor.year + 1, 1, 1)
        chunk_end = min(end, next_year)
        yield days_between(cursor, chunk_end), days_in_year(cursor.year)
        cursor = chunk_end
