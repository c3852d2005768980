"""Interest rate history of a credit.

A ``RateTimeline`` is an ordered, non-overlapping sequence of rate entries.
Each entry stays in effect until the next one starts. Classic credits carry a
single synthetic entry dated at the credit start.
"""

from __future__ import annotations

from bisect import bisect_right
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Tuple

from .config import MAX_RATE_FRACTION
from .data_models import RateEntry
from .exceptions import InvalidRateOrder, NoApplicableRate, RateBeforeCreditStart, ValidationError


class RateTimeline:
    """Rate entries ordered by effective date.

    Parameters
    ----------
    entries: Iterable[RateEntry]
        The entries, already in the intended order. Use ``from_entries`` to
        sort an arbitrary list. Construction validates the entries.
    credit_start: date, optional
        When given, no entry may take effect before this date.
    """

    def __init__(self, entries: Iterable[RateEntry], credit_start: Optional[date] = None) -> None:
        self._entries: Tuple[RateEntry, ...] = tuple(entries)
        self._dates: List[date] = [e.effective_date for e in self._entries]
        self.credit_start = credit_start
        self.validate()

    @classmethod
    def from_entries(cls, entries: Iterable[RateEntry], credit_start: Optional[date] = None) -> "RateTimeline":
        """Sort ``entries`` by date, then validate them.

        Duplicate dates are rejected rather than merged.
        """
        return cls(sorted(entries, key=lambda e: e.effective_date), credit_start)

    @classmethod
    def fixed(cls, rate: Decimal, start_date: date, note: Optional[str] = None) -> "RateTimeline":
        """Return the single-entry timeline of a classic credit."""
        return cls([RateEntry(rate=rate, effective_date=start_date, note=note)], start_date)

    def validate(self) -> None:
        if not self._entries:
            raise ValidationError("At least one rate entry is required")
        previous: Optional[RateEntry] = None
        for entry in self._entries:
            if entry.rate is None or entry.rate <= 0:
                raise ValidationError(
                    "Rate must be positive",
                    {"rate": str(entry.rate), "effective_date": entry.effective_date.isoformat()},
                )
            if entry.rate > MAX_RATE_FRACTION:
                raise ValidationError(
                    "Rate must be a fraction between 0 and 1",
                    {"rate": str(entry.rate), "effective_date": entry.effective_date.isoformat()},
                )
            if previous is not None and entry.effective_date <= previous.effective_date:
                raise InvalidRateOrder(previous.effective_date, entry.effective_date)
            if self.credit_start is not None and entry.effective_date < self.credit_start:
                raise RateBeforeCreditStart(entry.effective_date, self.credit_start)
            previous = entry

    @property
    def entries(self) -> Tuple[RateEntry, ...]:
        return self._entries

    @property
    def first_date(self) -> date:
        return self._entries[0].effective_date

    @property
    def opening_rate(self) -> Decimal:
        return self._entries[0].rate

    def rate_on(self, on_date: date) -> Decimal:
        """Return the rate of the latest entry effective on or before ``on_date``."""
        index = bisect_right(self._dates, on_date)
        if index == 0:
            raise NoApplicableRate(on_date, self._dates[0] if self._dates else None)
        return self._entries[index - 1].rate

    def accrual_rate_on(self, on_date: date) -> Decimal:
        """Rate used to accrue interest on ``on_date``.

        Days before the earliest entry accrue at the opening rate, so a
        timeline whose first entry falls between the credit start and the
        first due date still covers the first period.
        """
        if self._dates and on_date < self._dates[0]:
            return self.opening_rate
        return self.rate_on(on_date)

    def change_dates_between(self, start: date, end: date) -> List[date]:
        """Entry dates strictly after ``start`` and strictly before ``end``."""
        return [d for d in self._dates if start < d < end]

    def with_entry(self, entry: RateEntry) -> "RateTimeline":
        """Return a new validated timeline that also contains ``entry``."""
        return RateTimeline.from_entries(list(self._entries) + [entry], self.credit_start)

    def __iter__(self) -> Iterator[RateEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        inner = ", ".join(f"{e.effective_date.isoformat()}={e.rate}" for e in self._entries)
        return f"RateTimeline({inner})"
