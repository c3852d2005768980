"""Due-date generation for credit schedules."""

from __future__ import annotations

from datetime import date
from typing import List

from .config import MAX_PAYMENT_DAY, MIN_PAYMENT_DAY
from .data_models import Period
from .exceptions import ValidationError
from .utils import add_months


def generate_periods(start_date: date, payment_day: int, term_months: int, deferment_months: int = 0) -> List[Period]:
    """Return the ``term_months`` periods of a credit.

    Period ``k`` falls due on ``payment_day`` of the ``k``-th month after the
    start month, clamped to the last day of short months. Its interest runs
    from the previous due date (the start date for the first period) up to
    the due date. The first ``deferment_months`` periods are flagged so the
    calculators charge interest only.
    """
    if term_months <= 0:
        raise ValidationError("Term must be a positive number of months", {"term_months": term_months})
    if not MIN_PAYMENT_DAY <= payment_day <= MAX_PAYMENT_DAY:
        raise ValidationError(
            f"Payment day must be between {MIN_PAYMENT_DAY} and {MAX_PAYMENT_DAY}",
            {"payment_day": payment_day},
        )
    if deferment_months < 0 or deferment_months >= term_months:
        raise ValidationError(
            "Deferment must be between 0 and the term minus one",
            {"deferment_months": deferment_months, "term_months": term_months},
        )

    periods: List[Period] = []
    accrual_start = start_date
    for number in range(1, term_months + 1):
        due_date = add_months(start_date, number, day=payment_day)
        periods.append(
            Period(
                number=number,
                start_date=accrual_start,
                due_date=due_date,
                deferment=number <= deferment_months,
            )
        )
        accrual_start = due_date
    return periods
