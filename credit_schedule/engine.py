"""Schedule engine facade.

The engine ties the pieces together: it validates the credit, binds the rate
history to the credit's start date, generates the periods, runs the
calculator for the credit's method and checks the result before handing it
back. It keeps no state between calls; every function here is a pure
function of its arguments.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .calculators import adjustment_between, calculator_for, period_average_rate
from .config import RATE_QUANTUM
from .data_models import (
    AmendmentPolicy,
    CalculationMethod,
    Credit,
    CreditStatus,
    Payment,
    Period,
    PrincipalAdjustment,
    RateEntry,
    ScheduleItem,
    ScheduleResponse,
    Totals,
)
from .exceptions import CannotAmendSettledPeriod, ScheduleInvariantError, ValidationError
from .periods import generate_periods
from .rates import RateTimeline
from .utils import ZERO, minor_unit, round_money

logger = logging.getLogger(__name__)

RateSource = Union[RateTimeline, Iterable[RateEntry]]

# Fields of a credit that can be amended through ``apply_amendment``.
# ``rates`` stands for the rate history.
AMENDABLE_FIELDS = frozenset(
    {
        "number",
        "principal",
        "currency",
        "method",
        "start_date",
        "payment_day",
        "term_months",
        "deferment_months",
        "notes",
        "rates",
    }
)

# Fields frozen once any period is settled
LOCKED_WHEN_SETTLED = frozenset({"principal", "currency", "method", "start_date"})


def bind_rates(credit: Credit, rates: RateSource) -> RateTimeline:
    """Return ``rates`` as a timeline validated against the credit start."""
    entries = rates.entries if isinstance(rates, RateTimeline) else list(rates)
    return RateTimeline.from_entries(entries, credit.start_date)


def validate_adjustments(
    credit: Credit, periods: Sequence[Period], adjustments: Iterable[PrincipalAdjustment]
) -> List[PrincipalAdjustment]:
    """Return ``adjustments`` sorted by date, rejecting ones outside the term.

    An adjustment must be non-zero and dated after the start date and no
    later than the last due date, so that exactly one period owns it.
    """
    adjustments = sorted(adjustments, key=lambda a: a.effective_date)
    last_due = periods[-1].due_date if periods else credit.start_date
    for adjustment in adjustments:
        if round_money(adjustment.amount, credit.currency) == 0:
            raise ValidationError(
                "Principal adjustment amount cannot be zero",
                {"effective_date": adjustment.effective_date.isoformat()},
            )
        if not credit.start_date < adjustment.effective_date <= last_due:
            raise ValidationError(
                "Principal adjustment must fall within the credit term",
                {
                    "effective_date": adjustment.effective_date.isoformat(),
                    "start_date": credit.start_date.isoformat(),
                    "last_due_date": last_due.isoformat(),
                },
            )
    return adjustments


def compute_schedule(
    credit: Credit, rates: RateSource, adjustments: Optional[Iterable[PrincipalAdjustment]] = None
) -> Tuple[List[ScheduleItem], Totals]:
    """Compute the full schedule of ``credit`` and its totals.

    Parameters
    ----------
    credit: Credit
        The credit terms.
    rates: RateTimeline or iterable of RateEntry
        The rate history. Classic methods use its opening rate.
    adjustments: iterable of PrincipalAdjustment, optional
        Dated changes of the outstanding principal.

    Returns
    -------
    schedule: List[ScheduleItem]
        One row per period, ``credit.term_months`` rows in total.
    totals: Totals
        Aggregate principal, interest, payments and overpayment.
    """
    credit.validate()
    timeline = bind_rates(credit, rates)
    periods = generate_periods(credit.start_date, credit.payment_day, credit.term_months, credit.deferment_months)
    adjustments = validate_adjustments(credit, periods, adjustments or [])
    calculator = calculator_for(credit.method)
    items = calculator.compute(periods, credit.principal, timeline, credit.currency, adjustments)
    verify_schedule(items, credit.principal, credit.currency)
    totals = compute_totals(items, credit.principal, credit.currency)
    logger.debug(
        "Computed %s schedule for credit %r: %d periods, %d adjustments, interest %s",
        credit.method.value, credit.number, len(items), len(adjustments), totals.total_interest,
    )
    return items, totals


def compute_totals(items: Sequence[ScheduleItem], principal: Decimal, currency: str) -> Totals:
    """Aggregate the rows of a schedule.

    The overpayment is what is paid beyond the principal actually lent, i.e.
    the original principal plus any principal adjustments.
    """
    total_principal = sum((i.principal_due for i in items), ZERO)
    total_interest = sum((i.interest_due for i in items), ZERO)
    total_payments = sum((i.total_due for i in items), ZERO)
    lent = round_money(principal, currency) + sum((i.principal_adjustment for i in items), ZERO)
    return Totals(
        total_principal=total_principal,
        total_interest=total_interest,
        total_payments=total_payments,
        overpayment=total_payments - lent,
    )


def settled_payments(payments: Iterable[Payment]) -> List[Payment]:
    """Settled payments ordered by period number."""
    return sorted((p for p in payments if p.is_settled), key=lambda p: p.period_number)


def recompute(
    credit: Credit,
    rates: RateSource,
    settled_periods: Iterable[Payment],
    adjustments: Optional[Iterable[PrincipalAdjustment]] = None,
) -> List[ScheduleItem]:
    """Recompute the schedule around periods that are already settled.

    Settled periods keep the amounts recorded on their payments. The
    remaining periods are calculated from the balance left after the last
    settled period, over the periods still to come under the credit's
    current terms. This lets a change of payment day, term, deferment, a new
    future rate or a new principal adjustment regenerate only the tail of
    the schedule.

    Settled periods must be a prefix ``1..k`` of the schedule.
    """
    credit.validate()
    timeline = bind_rates(credit, rates)
    settled = settled_payments(settled_periods)
    if not settled:
        items, _ = compute_schedule(credit, timeline, adjustments)
        return items

    numbers = [p.period_number for p in settled]
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValidationError(
            "Settled periods must be consecutive from the first period",
            {"settled_periods": numbers},
        )
    if len(settled) > credit.term_months:
        raise ValidationError(
            "Term is shorter than the number of settled periods",
            {"term_months": credit.term_months, "settled_periods": len(settled)},
        )

    periods = generate_periods(credit.start_date, credit.payment_day, credit.term_months, credit.deferment_months)
    adjustments = validate_adjustments(credit, periods, adjustments or [])
    opening = round_money(credit.principal, credit.currency)
    rows: List[ScheduleItem] = []
    balance = opening
    accrual_start = credit.start_date
    for payment in settled:
        adjustment = adjustment_between(accrual_start, payment.due_date, adjustments, credit.currency)
        balance += adjustment - payment.principal_due
        if balance < 0:
            raise ValidationError(
                "Settled principal exceeds the credit principal",
                {"period": payment.period_number, "principal": str(opening)},
            )
        if credit.method.is_floating:
            rate = period_average_rate(accrual_start, payment.due_date, timeline).quantize(RATE_QUANTUM)
        else:
            rate = timeline.opening_rate
        rows.append(
            ScheduleItem(
                period_number=payment.period_number,
                due_date=payment.due_date,
                principal_due=payment.principal_due,
                interest_due=payment.interest_due,
                total_due=payment.total_due,
                remaining_balance=balance,
                average_rate=rate,
                deferment=payment.period_number <= credit.deferment_months,
                principal_adjustment=adjustment,
            )
        )
        accrual_start = payment.due_date

    tail = periods[len(settled):]
    if tail:
        tail[0] = replace(tail[0], start_date=accrual_start)
        calculator = calculator_for(credit.method)
        tail_items = calculator.compute(tail, balance, timeline, credit.currency, adjustments)
        verify_schedule(tail_items, balance, credit.currency)
        rows.extend(tail_items)
    elif balance != 0:
        raise ValidationError(
            "All periods are settled but principal remains outstanding",
            {"remaining_balance": str(balance)},
        )
    logger.debug(
        "Recomputed schedule for credit %r: %d settled, %d recalculated from balance %s",
        credit.number, len(settled), len(tail), balance,
    )
    return rows


def verify_schedule(items: Sequence[ScheduleItem], principal: Decimal, currency: str) -> None:
    """Check the arithmetic invariants of a freshly computed schedule.

    ``principal`` is the balance before the first row; principal
    adjustments recorded on the rows are added to it.

    Raises
    ------
    ScheduleInvariantError
        If a row's total differs from principal plus interest, a balance
        grows by more than the period's adjustment, the final balance is not
        zero or the principal rows do not add up to the principal lent.
    """
    if not items:
        return
    unit = minor_unit(currency)
    previous_balance = round_money(principal, currency)
    for item in items:
        if abs(item.total_due - (item.principal_due + item.interest_due)) > unit:
            raise ScheduleInvariantError(
                "total_matches_components",
                f"Total due {item.total_due} differs from principal {item.principal_due} "
                f"plus interest {item.interest_due}",
                item.period_number,
            )
        if item.principal_due < 0 or item.interest_due < 0:
            raise ScheduleInvariantError(
                "non_negative_amounts",
                "Principal and interest due cannot be negative",
                item.period_number,
            )
        if item.remaining_balance > previous_balance + item.principal_adjustment:
            raise ScheduleInvariantError(
                "balance_non_increasing",
                f"Remaining balance grew from {previous_balance} to {item.remaining_balance}",
                item.period_number,
            )
        previous_balance = item.remaining_balance
    last = items[-1]
    if last.remaining_balance != 0:
        raise ScheduleInvariantError(
            "final_balance_zero",
            f"Remaining balance {last.remaining_balance} after the final period",
            last.period_number,
        )
    repaid = sum((i.principal_due for i in items), ZERO)
    lent = round_money(principal, currency) + sum((i.principal_adjustment for i in items), ZERO)
    if abs(repaid - lent) > unit * len(items):
        raise ScheduleInvariantError(
            "principal_fully_repaid",
            f"Principal rows add up to {repaid}, expected {lent}",
            last.period_number,
        )


def amendment_policy(credit: Credit, payments: Iterable[Payment]) -> AmendmentPolicy:
    """Describe which fields of ``credit`` may still change.

    Once any settled payment exists, principal, currency, method and start
    date are frozen; the rate history stays editable only for floating
    methods, and only after the due date of the last settled period.
    """
    settled = settled_payments(payments)
    locked = bool(settled)
    locked_fields = set()
    if locked:
        locked_fields |= LOCKED_WHEN_SETTLED
        if not credit.method.is_floating:
            locked_fields.add("rates")
    return AmendmentPolicy(
        locked=locked,
        settled_periods=len(settled),
        editable_fields=frozenset(AMENDABLE_FIELDS - locked_fields),
        locked_fields=frozenset(locked_fields),
        settled_through=max(p.due_date for p in settled) if settled else None,
    )


def _check_not_closed(credit: Credit) -> None:
    if credit.status == CreditStatus.CLOSED:
        raise ValidationError("Closed credits cannot be amended", {"status": credit.status.value})


def _check_settled_rates(proposed, current: RateSource, policy: AmendmentPolicy) -> None:
    """Reject rate edits reaching into settled periods.

    A single new entry must take effect after ``policy.settled_through``. A
    replacement history must keep every entry up to that date unchanged.
    """
    through = policy.settled_through
    if isinstance(proposed, RateEntry):
        if proposed.effective_date <= through:
            raise CannotAmendSettledPeriod({"rates"}, policy.settled_periods, through)
        return
    current_entries = current.entries if isinstance(current, RateTimeline) else list(current)
    before = sorted((e.effective_date, e.rate) for e in current_entries if e.effective_date <= through)
    after = sorted((e.effective_date, e.rate) for e in proposed if e.effective_date <= through)
    if before != after:
        raise CannotAmendSettledPeriod({"rates"}, policy.settled_periods, through)


def check_amendment(
    credit: Credit, changes: Mapping[str, object], payments: Iterable[Payment], rates: RateSource
) -> AmendmentPolicy:
    """Validate ``changes`` against the amendment policy of ``credit``.

    ``changes["rates"]`` is either one new ``RateEntry`` or a full
    replacement history; ``rates`` is the history currently in force.

    Raises
    ------
    ValidationError
        If a field is unknown or the credit is closed.
    CannotAmendSettledPeriod
        If a frozen field would change, or a rate edit reaches into a
        settled period.
    """
    unknown = set(changes) - AMENDABLE_FIELDS
    if unknown:
        raise ValidationError("Unknown credit fields", {"fields": sorted(unknown)})
    _check_not_closed(credit)
    policy = amendment_policy(credit, payments)
    changed = {
        name for name in changes
        if name in policy.locked_fields and (name == "rates" or changes[name] != getattr(credit, name))
    }
    if changed:
        raise CannotAmendSettledPeriod(changed, policy.settled_periods)
    if "rates" in changes and policy.locked:
        _check_settled_rates(changes["rates"], rates, policy)
    return policy


def check_adjustment(credit: Credit, adjustment: PrincipalAdjustment, payments: Iterable[Payment]) -> AmendmentPolicy:
    """Validate a new principal adjustment against the settled periods.

    Raises
    ------
    ValidationError
        If the credit is closed.
    CannotAmendSettledPeriod
        If the adjustment is dated on or before the last settled due date.
    """
    _check_not_closed(credit)
    policy = amendment_policy(credit, payments)
    if policy.locked and adjustment.effective_date <= policy.settled_through:
        raise CannotAmendSettledPeriod({"adjustments"}, policy.settled_periods, policy.settled_through)
    return policy


def apply_amendment(
    credit: Credit, changes: Mapping[str, object], payments: Iterable[Payment], rates: RateSource
) -> Credit:
    """Return a copy of ``credit`` with ``changes`` applied and validated.

    The ``rates`` key is checked against the policy but not applied; rate
    entries belong to the caller's timeline.
    """
    payments = list(payments)
    check_amendment(credit, changes, payments, rates)
    values: Dict[str, object] = {k: v for k, v in changes.items() if k != "rates"}
    if "method" in values:
        values["method"] = CalculationMethod.parse(values["method"])
    amended = replace(credit, **values)
    amended.validate()
    return amended


def build_schedule_response(
    credit: Credit,
    rates: RateSource,
    payments: Optional[Iterable[Payment]] = None,
    adjustments: Optional[Iterable[PrincipalAdjustment]] = None,
) -> ScheduleResponse:
    """Schedule, totals and credit summary in one structure.

    When settled payments are given, the schedule is recomputed around them.
    """
    payments = list(payments or [])
    adjustments = list(adjustments or [])
    if settled_payments(payments):
        items = recompute(credit, rates, payments, adjustments)
        totals = compute_totals(items, credit.principal, credit.currency)
    else:
        items, totals = compute_schedule(credit, rates, adjustments)
    return ScheduleResponse(
        number=credit.number,
        principal=credit.principal,
        method=credit.method,
        currency=credit.currency,
        schedule=items,
        totals=totals,
    )
