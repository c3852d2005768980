"""Exceptions raised by the credit schedule engine.

Validation errors are caller-fixable and map to 4xx responses; invariant
errors signal a defect in a calculator and abort the computation.
"""

from __future__ import annotations

from datetime import date
from typing import Optional


class ScheduleError(Exception):
    """Base exception for all schedule engine errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(ScheduleError):
    """Raised when caller-supplied data is invalid."""
    pass


class InvalidRateOrder(ValidationError):
    """Raised when rate entries are not strictly increasing by effective date."""

    def __init__(self, previous: date, current: date):
        if previous == current:
            message = f"Duplicate rate effective date {current.isoformat()}"
        else:
            message = (
                f"Rate effective date {current.isoformat()} does not follow "
                f"{previous.isoformat()}"
            )
        super().__init__(
            message,
            {"previous_date": previous.isoformat(), "effective_date": current.isoformat()},
        )


class RateBeforeCreditStart(ValidationError):
    """Raised when a rate takes effect before the credit starts."""

    def __init__(self, effective_date: date, start_date: date):
        super().__init__(
            f"Rate effective date {effective_date.isoformat()} precedes credit start "
            f"{start_date.isoformat()}",
            {"effective_date": effective_date.isoformat(), "start_date": start_date.isoformat()},
        )


class NoApplicableRate(ValidationError):
    """Raised when no rate entry is in effect on the requested date."""

    def __init__(self, on_date: date, earliest: Optional[date] = None):
        details = {"date": on_date.isoformat()}
        if earliest:
            details["earliest_effective_date"] = earliest.isoformat()
        super().__init__(f"No rate in effect on {on_date.isoformat()}", details)


class CannotAmendSettledPeriod(ValidationError):
    """Raised when an immutable credit field changes after payments exist."""

    def __init__(self, fields, settled_periods: int, through: Optional[date] = None):
        fields = sorted(fields)
        details = {"fields": fields, "settled_periods": settled_periods}
        if through is None:
            message = f"Cannot change {', '.join(fields)} once payments exist"
        else:
            message = (
                f"Cannot change {', '.join(fields)} on or before {through.isoformat()}, "
                f"the due date of the last settled period"
            )
            details["settled_through"] = through.isoformat()
        super().__init__(message, details)


class CreditNotFoundError(ScheduleError):
    """Raised when a credit cannot be found."""

    def __init__(self, credit_id=None, number: str = None):
        details = {}
        if credit_id is not None:
            details["credit_id"] = credit_id
        if number:
            details["number"] = number

        message = "Credit not found"
        if number:
            message = f"Credit '{number}' not found"
        elif credit_id is not None:
            message = f"Credit with ID {credit_id} not found"

        super().__init__(message, details)


class PaymentNotFoundError(ScheduleError):
    """Raised when no payment is recorded for a credit period."""

    def __init__(self, credit_id, period_number: int):
        super().__init__(
            f"No payment recorded for period {period_number}",
            {"credit_id": credit_id, "period": period_number},
        )


class ScheduleInvariantError(ScheduleError):
    """Raised when a generated schedule breaks an arithmetic invariant.

    This never happens for valid input; it indicates a calculator defect.
    """

    def __init__(self, invariant: str, message: str, period: Optional[int] = None):
        details = {"invariant": invariant}
        if period is not None:
            details["period"] = period
        super().__init__(message, details)
        self.invariant = invariant
        self.period = period
