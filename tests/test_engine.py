"""
Tests for the schedule engine facade: full computation, recomputation around
settled periods, invariant checks and the amendment lock
"""

import pytest
from dataclasses import replace
from datetime import date
from decimal import Decimal

from credit_schedule.data_models import (
    CalculationMethod,
    Credit,
    CreditStatus,
    Payment,
    PaymentStatus,
    PrincipalAdjustment,
    RateEntry,
)
from credit_schedule.engine import (
    amendment_policy,
    apply_amendment,
    build_schedule_response,
    check_adjustment,
    check_amendment,
    compute_schedule,
    recompute,
    verify_schedule,
)
from credit_schedule.exceptions import (
    CannotAmendSettledPeriod,
    RateBeforeCreditStart,
    ScheduleInvariantError,
    ValidationError,
)

START = date(2024, 1, 15)


def make_credit(method=CalculationMethod.FLOATING_ANNUITY, **overrides):
    values = dict(
        principal=Decimal("100000"),
        method=method,
        start_date=START,
        payment_day=15,
        term_months=12,
        number="CR-1",
    )
    values.update(overrides)
    return Credit(**values)


def paid(items, count, status=PaymentStatus.PAID):
    return [
        Payment(
            period_number=i.period_number,
            due_date=i.due_date,
            principal_due=i.principal_due,
            interest_due=i.interest_due,
            total_due=i.total_due,
            status=status,
        )
        for i in items[:count]
    ]


RATES = [RateEntry(Decimal("0.12"), START)]


class TestComputeSchedule:

    def test_end_to_end_classic_annuity(self):
        credit = Credit(
            principal=Decimal("10000000"),
            method=CalculationMethod.CLASSIC_ANNUITY,
            start_date=date(2024, 1, 20),
            payment_day=20,
            term_months=24,
        )
        items, totals = compute_schedule(credit, [RateEntry(Decimal("0.099"), date(2024, 1, 20))])
        assert len(items) == 24
        assert items[0].due_date == date(2024, 2, 20)
        assert items[-1].due_date == date(2026, 1, 20)
        assert items[-1].remaining_balance == Decimal("0.00")
        assert totals.total_payments > Decimal("10000000")
        assert totals.total_principal == Decimal("10000000.00")
        assert totals.overpayment == totals.total_interest
        assert totals.total_payments == totals.total_principal + totals.total_interest

    def test_payment_day_clamped(self):
        credit = make_credit(start_date=date(2024, 1, 31), payment_day=31, term_months=3)
        items, _ = compute_schedule(credit, [RateEntry(Decimal("0.12"), date(2024, 1, 31))])
        assert [i.due_date for i in items] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]

    def test_rate_before_start_rejected(self):
        with pytest.raises(RateBeforeCreditStart):
            compute_schedule(make_credit(), [RateEntry(Decimal("0.12"), date(2024, 1, 1))])

    def test_invalid_credit_rejected(self):
        with pytest.raises(ValidationError):
            compute_schedule(make_credit(principal=Decimal("0")), RATES)
        with pytest.raises(ValidationError):
            compute_schedule(make_credit(deferment_months=12), RATES)

    def test_deterministic(self):
        assert compute_schedule(make_credit(), RATES) == compute_schedule(make_credit(), RATES)


class TestRecompute:

    def test_settled_prefix_kept_and_tail_follows_new_rate(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        settled = paid(original, 6)
        rates = RATES + [RateEntry(Decimal("0.15"), original[5].due_date)]

        items = recompute(credit, rates, settled)

        assert len(items) == 12
        assert items[:6] == original[:6]
        for before, after in zip(original[6:], items[6:]):
            assert after.total_due > before.total_due
        assert items[-1].remaining_balance == Decimal("0.00")
        assert sum(i.principal_due for i in items) == Decimal("100000.00")

    def test_tail_follows_new_term(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        items = recompute(replace(credit, term_months=18), RATES, paid(original, 6))
        assert len(items) == 18
        assert items[:6] == original[:6]
        assert items[6].remaining_balance < original[5].remaining_balance
        assert items[-1].remaining_balance == Decimal("0.00")

    def test_no_settled_payments_matches_full_schedule(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        assert recompute(credit, RATES, paid(original, 3, PaymentStatus.CANCELED)) == original

    def test_canceled_payments_do_not_settle(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 1) + paid(original[1:], 1, PaymentStatus.CANCELED)
        items = recompute(credit, RATES, payments)
        assert len(items) == 12
        assert items[0] == original[0]
        # the tail restarts from the rounded balance, so cents may differ
        for before, after in zip(original[1:], items[1:]):
            assert abs(after.total_due - before.total_due) <= Decimal("0.02")

    def test_gap_in_settled_periods(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 2) + paid(original[3:], 1)
        with pytest.raises(ValidationError):
            recompute(credit, RATES, payments)

    def test_term_shorter_than_settled(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        with pytest.raises(ValidationError):
            recompute(replace(credit, term_months=4), RATES, paid(original, 6))

    def test_build_response_recomputes_when_settled(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        rates = RATES + [RateEntry(Decimal("0.15"), original[5].due_date)]
        response = build_schedule_response(credit, rates, paid(original, 6))
        assert response.schedule == recompute(credit, rates, paid(original, 6))
        assert response.totals.total_principal == Decimal("100000.00")
        assert response.method == CalculationMethod.FLOATING_ANNUITY


class TestVerifySchedule:

    def test_valid_schedule_passes(self):
        items, _ = compute_schedule(make_credit(), RATES)
        verify_schedule(items, Decimal("100000"), "MDL")

    def test_total_mismatch(self):
        items, _ = compute_schedule(make_credit(), RATES)
        items[2] = replace(items[2], total_due=items[2].total_due + 1)
        with pytest.raises(ScheduleInvariantError) as excinfo:
            verify_schedule(items, Decimal("100000"), "MDL")
        assert excinfo.value.invariant == "total_matches_components"
        assert excinfo.value.period == 3

    def test_growing_balance(self):
        items, _ = compute_schedule(make_credit(), RATES)
        items[1] = replace(items[1], remaining_balance=Decimal("100001.00"))
        with pytest.raises(ScheduleInvariantError) as excinfo:
            verify_schedule(items, Decimal("100000"), "MDL")
        assert excinfo.value.invariant == "balance_non_increasing"

    def test_final_balance_not_zero(self):
        items, _ = compute_schedule(make_credit(), RATES)
        items[-1] = replace(items[-1], remaining_balance=Decimal("0.01"))
        with pytest.raises(ScheduleInvariantError) as excinfo:
            verify_schedule(items, Decimal("100000"), "MDL")
        assert excinfo.value.invariant == "final_balance_zero"


class TestAmendment:

    def test_open_credit_accepts_any_field(self):
        credit = make_credit()
        policy = amendment_policy(credit, [])
        assert not policy.locked
        assert policy.settled_through is None
        amended = apply_amendment(credit, {"principal": Decimal("200000"), "method": "fixed"}, [], RATES)
        assert amended.principal == Decimal("200000")
        assert amended.method == CalculationMethod.CLASSIC_ANNUITY
        assert credit.principal == Decimal("100000")

    def test_locked_fields_after_settlement(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 1)
        with pytest.raises(CannotAmendSettledPeriod) as excinfo:
            check_amendment(credit, {"principal": Decimal("200000"), "notes": "x"}, payments, RATES)
        assert excinfo.value.details["fields"] == ["principal"]
        assert excinfo.value.details["settled_periods"] == 1

    def test_unchanged_locked_value_is_allowed(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        amended = apply_amendment(
            credit,
            {"principal": Decimal("100000"), "term_months": 18, "notes": "restructured"},
            paid(original, 2),
            RATES,
        )
        assert amended.term_months == 18
        assert amended.notes == "restructured"

    def test_rates_locked_for_classic_only(self):
        original, _ = compute_schedule(make_credit(), RATES)
        payments = paid(original, 1)
        new_rates = {"rates": RATES + [RateEntry(Decimal("0.13"), date(2024, 6, 1))]}
        policy = check_amendment(make_credit(), new_rates, payments, RATES)
        assert "rates" in policy.editable_fields
        with pytest.raises(CannotAmendSettledPeriod):
            check_amendment(make_credit(method=CalculationMethod.CLASSIC_ANNUITY), new_rates, payments, RATES)

    def test_policy_reports_last_settled_due_date(self):
        original, _ = compute_schedule(make_credit(), RATES)
        policy = amendment_policy(make_credit(), paid(original, 3))
        assert policy.settled_periods == 3
        assert policy.settled_through == date(2024, 4, 15)

    @pytest.mark.parametrize("effective", [date(2024, 2, 1), date(2024, 4, 15)])
    def test_new_rate_inside_settled_periods_rejected(self, effective):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 3)
        with pytest.raises(CannotAmendSettledPeriod) as excinfo:
            check_amendment(credit, {"rates": RateEntry(Decimal("0.20"), effective)}, payments, RATES)
        assert excinfo.value.details["fields"] == ["rates"]
        assert excinfo.value.details["settled_through"] == "2024-04-15"

    def test_new_rate_after_settled_periods_accepted(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        entry = RateEntry(Decimal("0.20"), date(2024, 4, 16))
        policy = check_amendment(credit, {"rates": entry}, paid(original, 3), RATES)
        assert policy.settled_through == date(2024, 4, 15)

    def test_replacing_settled_rate_history_rejected(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 3)
        with pytest.raises(CannotAmendSettledPeriod):
            check_amendment(credit, {"rates": [RateEntry(Decimal("0.05"), START)]}, payments, RATES)
        with pytest.raises(CannotAmendSettledPeriod):
            check_amendment(
                credit, {"rates": RATES + [RateEntry(Decimal("0.15"), date(2024, 3, 1))]}, payments, RATES
            )

    def test_replacing_future_rates_keeps_settled_history(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        current = RATES + [RateEntry(Decimal("0.14"), date(2024, 8, 1))]
        proposed = RATES + [RateEntry(Decimal("0.15"), date(2024, 6, 1))]
        policy = check_amendment(credit, {"rates": proposed}, paid(original, 3), current)
        assert policy.locked

    def test_unknown_field(self):
        with pytest.raises(ValidationError):
            check_amendment(make_credit(), {"balance": 1}, [], RATES)

    def test_closed_credit_cannot_change(self):
        with pytest.raises(ValidationError):
            check_amendment(make_credit(status=CreditStatus.CLOSED), {"notes": "x"}, [], RATES)

    def test_overdue_credit_can_be_amended(self):
        credit = make_credit(status=CreditStatus.OVERDUE)
        amended = apply_amendment(credit, {"notes": "payment plan agreed"}, [], RATES)
        assert amended.notes == "payment plan agreed"
        assert amended.status == CreditStatus.OVERDUE

    def test_amended_credit_is_validated(self):
        with pytest.raises(ValidationError):
            apply_amendment(make_credit(), {"deferment_months": 12}, [], RATES)


class TestSettledRates:

    def test_settled_rows_keep_mid_period_average_rate(self):
        credit = make_credit()
        rates = RATES + [RateEntry(Decimal("0.18"), date(2024, 3, 1))]
        original, _ = compute_schedule(credit, rates)
        assert Decimal("0.12") < original[1].average_rate < Decimal("0.18")

        items = recompute(credit, rates, paid(original, 3))

        assert items[:3] == original[:3]


class TestPrincipalAdjustments:

    def test_increase_resolves_annuity(self):
        credit = make_credit()
        adjustment = PrincipalAdjustment(Decimal("10000"), date(2024, 6, 1))
        items, totals = compute_schedule(credit, RATES, [adjustment])

        assert items[4].principal_adjustment == Decimal("10000.00")
        assert all(i.principal_adjustment == 0 for i in items if i.period_number != 5)
        assert items[4].remaining_balance == items[3].remaining_balance + Decimal("10000.00") - items[4].principal_due
        assert items[5].total_due > items[3].total_due
        assert abs(items[5].total_due - items[9].total_due) <= Decimal("0.01")
        assert totals.total_principal == Decimal("110000.00")
        assert totals.overpayment == totals.total_interest
        assert items[-1].remaining_balance == Decimal("0.00")

    def test_reduction_on_due_date_belongs_to_that_period(self):
        credit = make_credit()
        adjustment = PrincipalAdjustment(Decimal("-20000"), date(2024, 6, 15))
        items, totals = compute_schedule(credit, RATES, [adjustment])
        assert items[4].due_date == date(2024, 6, 15)
        assert items[4].principal_adjustment == Decimal("-20000.00")
        assert items[5].total_due < items[3].total_due
        assert totals.total_principal == Decimal("80000.00")

    def test_differentiated_principal_resolved_from_first_period(self):
        credit = make_credit(method=CalculationMethod.CLASSIC_DIFFERENTIATED)
        adjustment = PrincipalAdjustment(Decimal("12000"), date(2024, 2, 1))
        items, _ = compute_schedule(credit, RATES, [adjustment])
        assert items[0].interest_due == Decimal("1120.00")
        assert items[0].principal_due == Decimal("9333.33")
        assert items[0].remaining_balance == Decimal("102666.67")

    def test_reduction_beyond_balance_rejected(self):
        adjustment = PrincipalAdjustment(Decimal("-200000"), date(2024, 6, 1))
        with pytest.raises(ValidationError):
            compute_schedule(make_credit(), RATES, [adjustment])

    @pytest.mark.parametrize(
        "adjustment",
        [
            PrincipalAdjustment(Decimal("1000"), START),
            PrincipalAdjustment(Decimal("1000"), date(2025, 1, 16)),
            PrincipalAdjustment(Decimal("0.001"), date(2024, 6, 1)),
        ],
    )
    def test_adjustment_outside_term_or_zero_rejected(self, adjustment):
        with pytest.raises(ValidationError):
            compute_schedule(make_credit(), RATES, [adjustment])

    def test_settled_period_keeps_its_adjustment(self):
        credit = make_credit()
        adjustments = [PrincipalAdjustment(Decimal("5000"), date(2024, 3, 1))]
        original, _ = compute_schedule(credit, RATES, adjustments)

        items = recompute(credit, RATES, paid(original, 3), adjustments)

        assert items[:3] == original[:3]
        assert items[1].principal_adjustment == Decimal("5000.00")
        assert sum(i.principal_due for i in items) == Decimal("105000.00")
        assert items[-1].remaining_balance == Decimal("0.00")

    def test_adjustment_after_settled_periods_changes_tail(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        adjustments = [PrincipalAdjustment(Decimal("-30000"), date(2024, 6, 1))]

        response = build_schedule_response(credit, RATES, paid(original, 3), adjustments)

        assert response.schedule[:3] == original[:3]
        assert response.schedule[4].principal_adjustment == Decimal("-30000.00")
        assert response.totals.total_principal == Decimal("70000.00")
        assert response.totals.overpayment == response.totals.total_interest

    def test_adjustment_inside_settled_periods_rejected(self):
        credit = make_credit()
        original, _ = compute_schedule(credit, RATES)
        payments = paid(original, 3)
        with pytest.raises(CannotAmendSettledPeriod):
            check_adjustment(credit, PrincipalAdjustment(Decimal("1000"), date(2024, 4, 15)), payments)
        policy = check_adjustment(credit, PrincipalAdjustment(Decimal("1000"), date(2024, 4, 16)), payments)
        assert policy.settled_periods == 3

    def test_adjustment_on_closed_credit_rejected(self):
        with pytest.raises(ValidationError):
            check_adjustment(
                make_credit(status=CreditStatus.CLOSED), PrincipalAdjustment(Decimal("1000"), date(2024, 6, 1)), []
            )

    def test_verify_allows_balance_growth_by_adjustment(self):
        items, _ = compute_schedule(make_credit(), RATES, [PrincipalAdjustment(Decimal("10000"), date(2024, 6, 1))])
        verify_schedule(items, Decimal("100000"), "MDL")
        items[4] = replace(items[4], principal_adjustment=Decimal("0"))
        with pytest.raises(ScheduleInvariantError) as excinfo:
            verify_schedule(items, Decimal("100000"), "MDL")
        assert excinfo.value.invariant == "balance_non_increasing"
