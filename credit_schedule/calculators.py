"""Schedule calculators, one per calculation method.

Every calculator shares the same loop: for each period it works out the
interest accrued on the outstanding balance, the principal repaid, and the
balance left afterwards. Internal amounts keep full ``Decimal`` precision;
rows are rounded half-up to the currency minor unit only when they are
emitted. The reported balance is the rounded internal balance and each row's
principal is the difference between consecutive reported balances, so the
rows always add up to the original principal and the final row absorbs
whatever is left.

Classic methods use one fixed monthly rate (annual rate / 12). Floating
methods take the rate in effect when a period opens; when a rate change falls
inside a period, that period's interest is accrued day by day over
rate-homogeneous sub-intervals and reported as one row.

Principal adjustments dated inside a period's ``(start, due]`` interval are
added to the balance before that period's interest; the annuity is then
re-solved and the differentiated principal follows the new balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import DEFAULT_CURRENCY, MONTHS_PER_YEAR, RATE_QUANTUM
from .data_models import CalculationMethod, Period, PrincipalAdjustment, ScheduleItem
from .exceptions import ValidationError
from .rates import RateTimeline
from .utils import ZERO, days_between, round_money, split_by_year

logger = logging.getLogger(__name__)


def _calculate_annuity_payment(principal: Decimal, rate_per_month: Decimal, term: int) -> Decimal:
    """Return the equal installment repaying ``principal`` over ``term`` periods.

    The formula is:

        payment = P * r / (1 - (1 + r)^-n)

    where ``P`` is the principal, ``r`` the monthly rate and ``n`` the number
    of payments. When the rate is zero the payment is ``P / n``.
    """
    if term <= 0:
        raise ValueError("Term must be positive")
    if rate_per_month == 0:
        return principal / Decimal(term)
    return principal * rate_per_month / (1 - (1 + rate_per_month) ** -term)


def _segments(start: date, end: date, rates: RateTimeline):
    boundaries = [start] + rates.change_dates_between(start, end) + [end]
    for seg_start, seg_end in zip(boundaries, boundaries[1:]):
        yield seg_start, seg_end, rates.accrual_rate_on(seg_start)


def period_average_rate(start: date, end: date, rates: RateTimeline) -> Decimal:
    """Day-weighted average annual rate over ``[start, end)``."""
    total_days = days_between(start, end)
    if not total_days:
        return rates.accrual_rate_on(start)
    weighted = sum(
        (rate * Decimal(days_between(seg_start, seg_end)) for seg_start, seg_end, rate in _segments(start, end, rates)),
        ZERO,
    )
    return weighted / Decimal(total_days)


def adjustment_between(
    start: date, end: date, adjustments: Iterable[PrincipalAdjustment], currency: str
) -> Decimal:
    """Rounded sum of the adjustments dated in ``(start, end]``."""
    return sum(
        (round_money(a.amount, currency) for a in adjustments if start < a.effective_date <= end),
        ZERO,
    )


def _accrued_interest(
    balance: Decimal, start: date, end: date, rates: RateTimeline
) -> Tuple[Decimal, Decimal]:
    """Accrue interest daily on ``balance`` over ``[start, end)``.

    Returns the interest and the day-weighted average annual rate. Each day
    accrues ``rate / days in its calendar year``.
    """
    interest = ZERO
    for seg_start, seg_end, rate in _segments(start, end, rates):
        for days, year_days in split_by_year(seg_start, seg_end):
            interest += balance * rate * Decimal(days) / Decimal(year_days)
    return interest, period_average_rate(start, end, rates)


@dataclass
class _RunState:
    """Mutable state of one ``compute`` call."""

    balance: Decimal
    remaining: int
    payment: Optional[Decimal] = None
    payment_rate: Optional[Decimal] = None


class ScheduleCalculator:
    """Base class of the four calculation strategies.

    Subclasses decide how much principal a period repays
    (``_principal_part``); ``floating`` decides whether the rate may change
    over the life of the credit.
    """

    method: CalculationMethod = None
    floating: bool = False

    def compute(
        self,
        periods: Sequence[Period],
        principal: Decimal,
        rates: RateTimeline,
        currency: str = DEFAULT_CURRENCY,
        adjustments: Sequence[PrincipalAdjustment] = (),
    ) -> List[ScheduleItem]:
        """Compute one schedule row per period.

        Parameters
        ----------
        periods: Sequence[Period]
            The periods to schedule. On recomputation this is the unsettled
            tail of the schedule and ``principal`` the balance left after
            the last settled period.
        principal: Decimal
            The outstanding balance at the start of the first period.
        rates: RateTimeline
            The rate source. Classic methods use its opening rate only.
        currency: str
            Currency whose minor unit the rows are rounded to.
        adjustments: Sequence[PrincipalAdjustment]
            Principal adjustments; each applies to the period whose
            ``(start, due]`` interval contains its date.

        Raises
        ------
        ValidationError
            If an adjustment would make the balance negative.
        """
        if not periods:
            return []
        state = _RunState(
            balance=principal,
            remaining=sum(1 for p in periods if not p.deferment),
        )
        reported = round_money(principal, currency)
        items: List[ScheduleItem] = []
        last_index = len(periods) - 1
        for index, period in enumerate(periods):
            adjustment = adjustment_between(period.start_date, period.due_date, adjustments, currency)
            if adjustment:
                state.balance += adjustment
                reported += adjustment
                if state.balance < 0:
                    raise ValidationError(
                        "Principal adjustment exceeds the outstanding balance",
                        {"period": period.number, "adjustment": str(adjustment)},
                    )
                # re-solve the installment on the new balance
                state.payment = None
                logger.debug("Applied principal adjustment %s in period %d", adjustment, period.number)
            period_rate = self._period_rate(period, rates)
            interest, average_rate = self._interest(period, state.balance, period_rate, rates)

            if period.deferment:
                principal_part = ZERO
            elif index == last_index or state.remaining <= 1:
                principal_part = state.balance
            else:
                principal_part = self._principal_part(state, period, period_rate, interest)
                principal_part = min(max(principal_part, ZERO), state.balance)
            if not period.deferment:
                state.remaining -= 1

            state.balance -= principal_part
            if index == last_index:
                state.balance = ZERO
            new_reported = round_money(state.balance, currency)
            principal_due = reported - new_reported
            interest_due = round_money(interest, currency)
            items.append(
                ScheduleItem(
                    period_number=period.number,
                    due_date=period.due_date,
                    principal_due=principal_due,
                    interest_due=interest_due,
                    total_due=principal_due + interest_due,
                    remaining_balance=new_reported,
                    average_rate=average_rate.quantize(RATE_QUANTUM),
                    deferment=period.deferment,
                    principal_adjustment=adjustment,
                )
            )
            reported = new_reported
        return items

    def _period_rate(self, period: Period, rates: RateTimeline) -> Decimal:
        """Annual rate governing ``period``.

        For floating methods this is the rate in effect on the boundary that
        opens the period.
        """
        if not self.floating:
            return rates.opening_rate
        return rates.accrual_rate_on(period.start_date)

    def _interest(
        self, period: Period, balance: Decimal, period_rate: Decimal, rates: RateTimeline
    ) -> Tuple[Decimal, Decimal]:
        if self.floating and self._changes_mid_period(period, rates):
            return _accrued_interest(balance, period.start_date, period.due_date, rates)
        return balance * period_rate / MONTHS_PER_YEAR, period_rate

    @staticmethod
    def _changes_mid_period(period: Period, rates: RateTimeline) -> bool:
        opening = rates.accrual_rate_on(period.start_date)
        return any(
            rates.accrual_rate_on(d) != opening
            for d in rates.change_dates_between(period.start_date, period.due_date)
        )

    def _principal_part(self, state: _RunState, period: Period, period_rate: Decimal, interest: Decimal) -> Decimal:
        raise NotImplementedError


class ClassicAnnuityCalculator(ScheduleCalculator):
    """Equal total payment per amortizing period at a fixed rate."""

    method = CalculationMethod.CLASSIC_ANNUITY

    def _principal_part(self, state: _RunState, period: Period, period_rate: Decimal, interest: Decimal) -> Decimal:
        if state.payment is None or period_rate != state.payment_rate:
            if state.payment_rate is not None and period_rate != state.payment_rate:
                logger.debug(
                    "Rate changed to %s at period %d; re-solving annuity over %d periods",
                    period_rate, period.number, state.remaining,
                )
            state.payment = _calculate_annuity_payment(
                state.balance, period_rate / MONTHS_PER_YEAR, state.remaining
            )
            state.payment_rate = period_rate
        return state.payment - interest


class FloatingAnnuityCalculator(ClassicAnnuityCalculator):
    """Annuity re-solved on the remaining balance whenever the rate changes."""

    method = CalculationMethod.FLOATING_ANNUITY
    floating = True


class ClassicDifferentiatedCalculator(ScheduleCalculator):
    """Equal principal per amortizing period; interest on the balance."""

    method = CalculationMethod.CLASSIC_DIFFERENTIATED

    def _principal_part(self, state: _RunState, period: Period, period_rate: Decimal, interest: Decimal) -> Decimal:
        return state.balance / Decimal(state.remaining)


class FloatingDifferentiatedCalculator(ClassicDifferentiatedCalculator):
    """Equal principal per amortizing period; interest follows the rate history."""

    method = CalculationMethod.FLOATING_DIFFERENTIATED
    floating = True


CALCULATORS: Dict[CalculationMethod, ScheduleCalculator] = {
    calculator.method: calculator
    for calculator in (
        ClassicAnnuityCalculator(),
        ClassicDifferentiatedCalculator(),
        FloatingAnnuityCalculator(),
        FloatingDifferentiatedCalculator(),
    )
}


def calculator_for(method: CalculationMethod) -> ScheduleCalculator:
    return CALCULATORS[CalculationMethod.parse(method)]
